"""
Conversation aggregation service.

Joins messages to their thread and derives the ProcessedConversation view
model: status, EV score, priority, last-activity rendering and summary
counts. Everything here is a pure function of its inputs; the caller
supplies ``now`` so repeated passes over unchanged data are deep-equal.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from leadinbox.infrastructure.observability.logging import get_logger
from leadinbox.models.domain.conversation_domain import (
    Conversation,
    ConversationStatus,
    Message,
    Priority,
    ProcessedConversation,
    Thread,
)

from .normalizer import normalize_messages, normalize_thread

logger = get_logger(__name__)

EV_SCORE_MIN = 0.0
EV_SCORE_MAX = 100.0

# Priority thresholds
HIGH_VALUE_EV = 80.0
WARM_EV = 60.0
COLD_EV = 30.0
OVERDUE_REPLY = timedelta(hours=24)


def sort_messages(messages: Iterable[Message]) -> tuple[Message, ...]:
    """Ascending by timestamp; ties keep insertion order."""
    return tuple(sorted(messages, key=lambda message: message.sent_at))


def is_evaluable(message: Message) -> bool:
    score = message.ev_score
    return (
        message.is_inbound
        and score is not None
        and math.isfinite(score)
        and EV_SCORE_MIN <= score <= EV_SCORE_MAX
    )


def latest_evaluable_message(messages: Sequence[Message]) -> Message | None:
    """Latest inbound message carrying a valid EV score (messages sorted ascending)."""
    for message in reversed(messages):
        if is_evaluable(message):
            return message
    return None


def determine_status(thread: Thread, last_message: Message | None) -> ConversationStatus:
    """
    Status in strict priority order, first match wins:
    spam, flagged (unless review override), completed, pending, active.
    """
    if thread.spam:
        return "spam"
    if thread.flag_for_review and not thread.flag_review_override:
        return "flagged"
    if thread.completed:
        return "completed"
    if last_message is not None and last_message.is_inbound and not thread.busy:
        return "pending"
    return "active"


def determine_priority(
    status: ConversationStatus,
    ev_score: float | None,
    awaiting_reply_since: datetime | None,
    now: datetime,
) -> Priority:
    if status in ("spam", "completed"):
        return "low"
    if status == "flagged":
        return "high"

    if status == "pending":
        waiting = now - awaiting_reply_since if awaiting_reply_since else timedelta(0)
        overdue = waiting >= OVERDUE_REPLY
        if ev_score is not None and (ev_score >= HIGH_VALUE_EV or (overdue and ev_score >= WARM_EV)):
            return "urgent"
        if overdue:
            return "high"

    if ev_score is not None:
        if ev_score >= HIGH_VALUE_EV:
            return "high"
        if ev_score < COLD_EV and status != "pending":
            return "low"
    return "normal"


def format_last_activity(at: datetime | None, now: datetime) -> str:
    """Human-relative rendering of the most recent activity."""
    if at is None:
        return "No activity"

    at_utc = at.astimezone(UTC)
    now_utc = now.astimezone(UTC)
    delta = now_utc - at_utc

    day_diff = (now_utc.date() - at_utc.date()).days

    if delta < timedelta(hours=1):
        return "Just now"
    if day_diff == 0:
        return f"{int(delta.total_seconds() // 3600)}h ago"
    if day_diff == 1:
        return "Yesterday"
    if day_diff < 7:
        return f"{day_diff}d ago"
    return f"{at_utc:%b} {at_utc.day}, {at_utc.year}"


def conversation_title(thread: Thread) -> str:
    contact = thread.source_contact
    return contact.name or contact.source_name or contact.email or "Unknown Lead"


def _awaiting_reply_since(messages: Sequence[Message]) -> datetime | None:
    """Timestamp of the oldest inbound message in the trailing unanswered run."""
    since = None
    for message in reversed(messages):
        if not message.is_inbound:
            break
        since = message.sent_at
    return since


def process_conversation(conversation: Conversation, *, now: datetime | None = None) -> ProcessedConversation:
    """Derive a single ProcessedConversation from a thread and its messages."""
    now = now or datetime.now(UTC)
    thread = conversation.thread
    messages = sort_messages(conversation.messages)

    last_message = messages[-1] if messages else None
    last_activity_at = last_message.sent_at if last_message else thread.last_message_at

    evaluable = latest_evaluable_message(messages)
    ev_score = evaluable.ev_score if evaluable else None

    status = determine_status(thread, last_message)
    awaiting = _awaiting_reply_since(messages) if status == "pending" else None

    inbound_count = sum(1 for message in messages if message.is_inbound)

    return ProcessedConversation(
        thread=thread,
        messages=messages,
        status=status,
        ev_score=ev_score,
        priority=determine_priority(status, ev_score, awaiting, now),
        last_activity=format_last_activity(last_activity_at, now),
        last_activity_at=last_activity_at,
        title=conversation_title(thread),
        message_count=len(messages),
        inbound_count=inbound_count,
        outbound_count=len(messages) - inbound_count,
        last_message_type=last_message.type if last_message else None,
        awaiting_reply_since=awaiting,
    )


def _as_thread(item: Any) -> Thread | None:
    if isinstance(item, Thread):
        return item
    return normalize_thread(item)


def aggregate(
    threads: Iterable[Any],
    messages_by_thread: Mapping[str, Iterable[Any]] | None = None,
    *,
    now: datetime | None = None,
) -> list[ProcessedConversation]:
    """
    Join messages to threads and derive the processed view.

    Args:
        threads: Thread objects or raw thread records
        messages_by_thread: conversation_id -> Message objects or raw records
        now: reference instant for relative rendering and reply age

    Returns:
        ProcessedConversation list, most recent activity first (stable)
    """
    now = now or datetime.now(UTC)
    messages_by_thread = messages_by_thread or {}

    processed: list[ProcessedConversation] = []
    seen: set[str] = set()

    for item in threads:
        thread = _as_thread(item)
        if thread is None:
            continue
        if thread.conversation_id in seen:
            logger.warning("Duplicate thread record ignored", conversation_id=thread.conversation_id)
            continue
        seen.add(thread.conversation_id)

        raw_messages = messages_by_thread.get(thread.conversation_id, ())
        messages = normalize_messages(list(raw_messages), thread.conversation_id)
        processed.append(process_conversation(Conversation(thread, tuple(messages)), now=now))

    return order_by_recent_activity(processed)


def order_by_recent_activity(items: Iterable[ProcessedConversation]) -> list[ProcessedConversation]:
    """Most recent activity first; conversations without activity last."""
    items = list(items)
    dated = [item for item in items if item.last_activity_at is not None]
    undated = [item for item in items if item.last_activity_at is None]
    dated.sort(key=lambda item: item.last_activity_at, reverse=True)
    return dated + undated
