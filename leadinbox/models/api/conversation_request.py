"""
Conversation API request models.
Used by routes for input validation.
"""

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class BulkActionRequest(BaseModel):
    """Request for running one operation over a selection of conversations."""

    ids: list[str] = Field(..., description="Conversation IDs in the selection")
    operation: Literal["delete", "mark_complete", "add_note", "mark_spam", "flag_for_review"] = Field(
        ..., description="Operation applied to every selected conversation"
    )
    note: str | None = Field(default=None, description="Note text (add_note only)")

    @model_validator(mode="after")
    def note_required_for_add_note(self):
        if self.operation == "add_note" and self.note is None:
            raise ValueError("note is required for add_note")
        return self


class CompleteConversationRequest(BaseModel):
    """Request for marking a conversation complete."""

    reason: str = Field(default="", max_length=2000, description="Why the conversation was completed")
    next_steps: str = Field(default="", max_length=2000, description="Follow-up actions for the agent")


class SaveNotesRequest(BaseModel):
    """Request for replacing a conversation's notes."""

    notes: str = Field(..., max_length=10000, description="Free-text notes owned by the agent")
