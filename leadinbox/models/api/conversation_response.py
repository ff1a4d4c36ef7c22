"""
Conversation API response models.
Used by routes for output formatting.

Two presentation variants share one data contract: ``simple`` for the
inbox list, ``detailed`` with contact fields and the message history.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from leadinbox.models.domain.conversation_domain import Message, ProcessedConversation
from leadinbox.services.conversations.coordinator import BulkResult
from leadinbox.services.conversations.metrics import ConversationMetrics, TrendData, format_trend_change, should_show_trend

ViewMode = Literal["simple", "detailed"]


class ConversationSummaryResponse(BaseModel):
    """Inbox list row."""

    conversation_id: str = Field(..., description="Thread ID")
    title: str = Field(..., description="Lead name, email or subject")
    status: str = Field(..., description="Derived status (spam, flagged, completed, pending, active)")
    priority: str = Field(..., description="Derived priority (urgent, high, normal, low)")
    ev_score: float | None = Field(None, description="EV score of the latest scored inbound message")
    last_activity: str = Field(..., description="Human-readable last activity (e.g., '3h ago')")
    last_activity_at: datetime | None = Field(None, description="Timestamp of the latest message")
    read: bool = Field(..., description="Whether the agent has opened the thread")
    lcp_enabled: bool = Field(..., description="Whether the AI auto-responder is enabled")
    message_count: int = Field(..., description="Number of messages in thread")


class MessageResponse(BaseModel):
    """Response model for one email in a thread."""

    id: str = Field(..., description="Message ID")
    type: str = Field(..., description="inbound-email or outbound-email")
    timestamp: str = Field(..., description="Zone-qualified ISO-8601 timestamp")
    sender_name: str = Field(default="", description="Sender display name")
    sender_email: str = Field(default="", description="Sender address")
    recipient: str = Field(default="", description="Recipient address")
    subject: str = Field(default="", description="Message subject")
    body: str = Field(default="", description="Message body")
    ev_score: float | None = Field(None, description="EV score, if the message was scored")


class ConversationDetailResponse(ConversationSummaryResponse):
    """Full conversation with lead details and message history."""

    lead_name: str | None = Field(None, description="Lead display name")
    lead_email: str | None = Field(None, description="Lead email address")
    lead_phone: str | None = Field(None, description="Lead phone number")
    location: str | None = Field(None, description="Lead location")
    ai_summary: str | None = Field(None, description="AI-generated conversation summary")
    budget_range: str | None = Field(None, description="Budget extracted from the conversation")
    preferred_property_types: str | None = Field(None, description="Property types the lead asked about")
    timeline: str | None = Field(None, description="Lead's buying or selling timeline")
    notes: str | None = Field(None, description="Agent notes")
    flag: bool = Field(..., description="Flagged as ready for completion")
    flag_for_review: bool = Field(..., description="Flagged by AI review")
    flag_review_override: bool = Field(..., description="AI review flag suppressed by the agent")
    spam: bool = Field(..., description="Marked as spam")
    completed: bool = Field(..., description="Marked complete")
    lcp_flag_threshold: float = Field(..., description="EV score at which the auto-responder flags")
    awaiting_reply_since: datetime | None = Field(None, description="Oldest unanswered inbound message time")
    inbound_count: int = Field(..., description="Number of inbound messages")
    outbound_count: int = Field(..., description="Number of outbound messages")
    messages: list[MessageResponse] = Field(default_factory=list, description="Messages, oldest first")


class ConversationListResponse(BaseModel):
    """Response model for conversation list."""

    conversations: list[ConversationDetailResponse | ConversationSummaryResponse] = Field(
        ..., description="Filtered and sorted conversations"
    )
    total_count: int = Field(..., description="Number of conversations after filtering")
    view: ViewMode = Field(..., description="Presentation variant used")


class MetricsResponse(BaseModel):
    """Aggregate counts and rates for the inbox."""

    total: int = Field(..., description="Total conversations")
    active: int = Field(..., description="Active conversations")
    pending: int = Field(..., description="Conversations awaiting a reply")
    completed: int = Field(..., description="Completed conversations")
    flagged: int = Field(..., description="Conversations flagged for review")
    spam: int = Field(..., description="Spam conversations")
    average_ev_score: float = Field(..., description="Mean EV score over scored conversations")
    conversion_rate: float = Field(..., description="Completed / total, in percent")
    percentages: dict[str, float] = Field(default_factory=dict, description="Share of each status, in percent")


class TrendResponse(BaseModel):
    current: float = Field(..., description="Value in the selected window")
    previous: float = Field(..., description="Value in the preceding window of equal length")
    change: float = Field(..., description="Absolute change")
    percent_change: float | None = Field(None, description="Relative change; null without a baseline")
    direction: str = Field(..., description="up, down or stable")
    show: bool = Field(..., description="Whether the change is meaningful enough to display")
    label: str = Field(default="", description="Formatted change (e.g., '+12%')")


class TrendsResponse(BaseModel):
    start: datetime = Field(..., description="Window start")
    end: datetime = Field(..., description="Window end")
    trends: dict[str, TrendResponse] = Field(..., description="Trend per metric name")


class MutationResponse(BaseModel):
    """Outcome of a single-conversation mutation."""

    success: bool = Field(..., description="Whether the change was committed")
    conversation_id: str = Field(..., description="Thread ID")
    operation: str = Field(..., description="Mutation name")
    conversation: ConversationSummaryResponse | None = Field(None, description="Record after the mutation")


class BulkActionResponse(BaseModel):
    operation: str = Field(..., description="Operation that was applied")
    succeeded: list[str] = Field(default_factory=list, description="IDs that committed")
    failed: list[str] = Field(default_factory=list, description="IDs that were rolled back")


class PollResponse(BaseModel):
    new_email: bool = Field(..., description="Whether new mail triggered a refresh")
    total_count: int = Field(..., description="Conversations in the view after polling")


def _message_response(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        type=message.type,
        timestamp=message.timestamp,
        sender_name=message.sender_name,
        sender_email=message.sender_email,
        recipient=message.recipient,
        subject=message.subject,
        body=message.body,
        ev_score=message.ev_score,
    )


def present_simple(item: ProcessedConversation) -> ConversationSummaryResponse:
    return ConversationSummaryResponse(
        conversation_id=item.conversation_id,
        title=item.title,
        status=item.status,
        priority=item.priority,
        ev_score=item.ev_score,
        last_activity=item.last_activity,
        last_activity_at=item.last_activity_at,
        read=item.thread.read,
        lcp_enabled=item.thread.lcp_enabled,
        message_count=item.message_count,
    )


def present_detailed(item: ProcessedConversation) -> ConversationDetailResponse:
    thread = item.thread
    contact = thread.source_contact
    return ConversationDetailResponse(
        **present_simple(item).model_dump(),
        lead_name=contact.name,
        lead_email=contact.email,
        lead_phone=contact.phone,
        location=contact.location,
        ai_summary=thread.ai_summary,
        budget_range=thread.budget_range,
        preferred_property_types=thread.preferred_property_types,
        timeline=thread.timeline,
        notes=thread.notes,
        flag=thread.flag,
        flag_for_review=thread.flag_for_review,
        flag_review_override=thread.flag_review_override,
        spam=thread.spam,
        completed=thread.completed,
        lcp_flag_threshold=thread.lcp_flag_threshold,
        awaiting_reply_since=item.awaiting_reply_since,
        inbound_count=item.inbound_count,
        outbound_count=item.outbound_count,
        messages=[_message_response(message) for message in item.messages],
    )


PRESENTERS: dict[str, Callable[[ProcessedConversation], ConversationSummaryResponse]] = {
    "simple": present_simple,
    "detailed": present_detailed,
}


def present(item: ProcessedConversation, view: ViewMode = "simple") -> ConversationSummaryResponse:
    return PRESENTERS[view](item)


def metrics_response(metrics: ConversationMetrics) -> MetricsResponse:
    return MetricsResponse(
        total=metrics.total,
        active=metrics.active,
        pending=metrics.pending,
        completed=metrics.completed,
        flagged=metrics.flagged,
        spam=metrics.spam,
        average_ev_score=metrics.average_ev_score,
        conversion_rate=metrics.conversion_rate,
        percentages=dict(metrics.percentages),
    )


def trend_response(trend: TrendData) -> TrendResponse:
    return TrendResponse(
        current=trend.current,
        previous=trend.previous,
        change=trend.change,
        percent_change=trend.percent_change,
        direction=trend.direction,
        show=should_show_trend(trend),
        label=format_trend_change(trend),
    )


def bulk_response(result: BulkResult) -> BulkActionResponse:
    return BulkActionResponse(
        operation=result.operation,
        succeeded=sorted(result.succeeded),
        failed=sorted(result.failed),
    )
