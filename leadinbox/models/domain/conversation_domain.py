"""
Conversation Domain Models
Canonical thread/message shapes produced by the normalizer and the derived
view model produced by the aggregator.

These dataclasses are frozen: derived records are always replaced
wholesale, never patched in place.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

MessageType = Literal["inbound-email", "outbound-email"]
ConversationStatus = Literal["active", "pending", "completed", "flagged", "spam"]
Priority = Literal["low", "normal", "high", "urgent"]

INBOUND_EMAIL: MessageType = "inbound-email"
OUTBOUND_EMAIL: MessageType = "outbound-email"

CONVERSATION_STATUSES: tuple[ConversationStatus, ...] = (
    "active",
    "pending",
    "completed",
    "flagged",
    "spam",
)

DEFAULT_LCP_FLAG_THRESHOLD = 70.0


@dataclass(frozen=True, slots=True)
class Contact:
    """Lead contact details as far as the store knows them."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    location: str | None = None
    source_name: str | None = None


@dataclass(frozen=True, slots=True)
class Thread:
    """One conversation with a lead."""

    conversation_id: str
    associated_account: str | None = None
    source_contact: Contact = field(default_factory=Contact)

    # Status flags
    read: bool = False
    flag: bool = False  # ready for completion
    flag_for_review: bool = False
    flag_review_override: bool = False  # AI review checking disabled
    busy: bool = False  # outbound send in flight
    spam: bool = False
    lcp_enabled: bool = False
    completed: bool = False

    # AI-derived fields
    ai_summary: str | None = None
    budget_range: str | None = None
    preferred_property_types: str | None = None
    timeline: str | None = None
    subject: str | None = None
    lcp_flag_threshold: float = DEFAULT_LCP_FLAG_THRESHOLD

    # Client-owned fields
    notes: str | None = None
    completion_reason: str | None = None
    completion_next_steps: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_message_at: datetime | None = None

    @property
    def lead_name(self) -> str | None:
        return self.source_contact.name

    @property
    def lead_email(self) -> str | None:
        return self.source_contact.email


@dataclass(frozen=True, slots=True)
class Message:
    """One inbound or outbound email in a thread."""

    id: str
    conversation_id: str
    type: MessageType
    timestamp: str  # zone-qualified ISO-8601
    sent_at: datetime
    sender_name: str = ""
    sender_email: str = ""
    recipient: str = ""
    body: str = ""
    subject: str = ""
    ev_score: float | None = None  # None means not scored yet
    in_reply_to: str | None = None
    is_first_email: bool = False
    read: bool = False

    @property
    def is_inbound(self) -> bool:
        return self.type == INBOUND_EMAIL


@dataclass(frozen=True, slots=True)
class Conversation:
    thread: Thread
    messages: tuple[Message, ...] = ()


@dataclass(frozen=True, slots=True)
class ProcessedConversation:
    """Conversation plus derived, read-only fields."""

    thread: Thread
    messages: tuple[Message, ...]
    status: ConversationStatus
    ev_score: float | None
    priority: Priority
    last_activity: str
    last_activity_at: datetime | None
    title: str
    message_count: int
    inbound_count: int
    outbound_count: int
    last_message_type: MessageType | None
    awaiting_reply_since: datetime | None

    @property
    def conversation_id(self) -> str:
        return self.thread.conversation_id

    @property
    def conversation(self) -> Conversation:
        return Conversation(thread=self.thread, messages=self.messages)
