"""
Record normalizer.

Converts raw, loosely typed records from the record store into canonical
Thread/Message objects. All coercion lives here: nothing downstream of
this module sees stringly-typed booleans, bare timestamps or non-numeric
scores. Bad values are replaced by the safest default and logged, never
raised.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from leadinbox.infrastructure.observability.logging import get_logger
from leadinbox.models.domain.conversation_domain import (
    DEFAULT_LCP_FLAG_THRESHOLD,
    INBOUND_EMAIL,
    OUTBOUND_EMAIL,
    Contact,
    Message,
    Thread,
)

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# 2025-06-18T02:24:04, 2025-06-18T02:24:04.123, 2025-06-18T02:24:04.542130
_BARE_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?$")
_ZONED_TIMESTAMP = re.compile(r"(Z|[+-]\d{2}:?\d{2})$", re.IGNORECASE)

_TRUE_STRINGS = {"true"}


def normalize_bool(value: Any) -> bool:
    """Strict boolean from a storage value. Anything unrecognized is False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    if isinstance(value, int | float) and not isinstance(value, bool):
        return value == 1
    return False


def normalize_timestamp(raw: Any) -> str | None:
    """
    Return a zone-qualified ISO-8601 string.

    Timestamps without a zone suffix are assumed to be UTC and get a "Z"
    appended. Zone-qualified strings are returned unchanged; UTC datetime
    objects are rendered with "Z" as well. Returns None for missing or
    unparseable values.
    """
    if isinstance(raw, datetime):
        if raw.tzinfo is None or raw.utcoffset() == timedelta(0):
            return raw.replace(tzinfo=None).isoformat() + "Z"
        return raw.isoformat()

    if not isinstance(raw, str):
        return None

    value = raw.strip()
    if not value:
        return None

    if _BARE_TIMESTAMP.match(value):
        candidate = value + "Z"
    elif _ZONED_TIMESTAMP.search(value):
        candidate = value
    else:
        return None

    if _parse_iso(candidate) is None:
        return None
    return candidate


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse a storage timestamp into an aware datetime (bare values are UTC)."""
    normalized = normalize_timestamp(raw)
    if normalized is None:
        return None
    return _parse_iso(normalized)


def _parse_iso(value: str) -> datetime | None:
    text = value[:-1] + "+00:00" if value[-1:] in ("Z", "z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_ev_score(raw: Any) -> float | None:
    """Finite numeric score or None. Unscored must never become 0."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int | float):
        score = float(raw)
    elif isinstance(raw, str):
        try:
            score = float(raw.strip())
        except ValueError:
            return None
    else:
        # Decimal and friends from the store's JSON encoder
        try:
            score = float(raw)
        except (TypeError, ValueError):
            return None
    if not math.isfinite(score):
        return None
    return score


def _first_text(raw: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _threshold(raw: Any) -> float:
    value = normalize_ev_score(raw)
    if value is None:
        return DEFAULT_LCP_FLAG_THRESHOLD
    return value


def normalize_thread(raw: Any) -> Thread | None:
    """
    Build a Thread from a raw store record.

    Accepts either a bare thread record or an envelope {"thread": {...}}.
    Returns None for records without an identity and for soft-deleted
    records.
    """
    if not isinstance(raw, Mapping):
        logger.warning("Skipping non-mapping thread record", record_type=type(raw).__name__)
        return None

    record = raw.get("thread") if isinstance(raw.get("thread"), Mapping) else raw

    conversation_id = record.get("conversation_id") or record.get("id")
    if not conversation_id:
        logger.warning("Skipping thread record without conversation id")
        return None
    conversation_id = str(conversation_id)

    if normalize_bool(record.get("deleted")):
        logger.debug("Skipping soft-deleted thread", conversation_id=conversation_id)
        return None

    contact = Contact(
        name=_first_text(record, "lead_name", "source_name", "name", "client_name", "sender_name"),
        email=_first_text(record, "client_email", "source", "email", "sender_email", "lead_email"),
        phone=_first_text(record, "phone", "phone_number", "contact_phone"),
        location=_first_text(record, "location", "address", "city", "area"),
        source_name=_first_text(record, "source_name", "source", "channel"),
    )

    return Thread(
        conversation_id=conversation_id,
        associated_account=_first_text(record, "associated_account"),
        source_contact=contact,
        read=normalize_bool(record.get("read")),
        flag=normalize_bool(record.get("flag")),
        flag_for_review=normalize_bool(record.get("flag_for_review")),
        flag_review_override=normalize_bool(record.get("flag_review_override")),
        busy=normalize_bool(record.get("busy")),
        spam=normalize_bool(record.get("spam")),
        lcp_enabled=normalize_bool(record.get("lcp_enabled")),
        completed=normalize_bool(record.get("completed")),
        ai_summary=_first_text(record, "ai_summary", "summary"),
        budget_range=_first_text(record, "budget_range", "budget"),
        preferred_property_types=_first_text(record, "preferred_property_types", "property_types"),
        timeline=_first_text(record, "timeline", "timeframe"),
        subject=_first_text(record, "subject"),
        lcp_flag_threshold=_threshold(record.get("lcp_flag_threshold")),
        notes=record.get("notes") if isinstance(record.get("notes"), str) else None,
        completion_reason=_first_text(record, "completion_reason"),
        completion_next_steps=_first_text(record, "completion_next_steps"),
        created_at=parse_timestamp(record.get("createdAt") or record.get("created_at")),
        updated_at=parse_timestamp(record.get("updatedAt") or record.get("updated_at")),
        last_message_at=parse_timestamp(record.get("lastMessageAt") or record.get("last_updated")),
    )


def normalize_message(raw: Any, conversation_id: str, position: int = 0) -> Message | None:
    """Build a Message from a raw store record; None for non-mapping input."""
    if not isinstance(raw, Mapping):
        logger.warning(
            "Skipping non-mapping message record",
            conversation_id=conversation_id,
            record_type=type(raw).__name__,
        )
        return None

    sender = _first_text(raw, "sender", "sender_email", "from") or ""
    sender_name = _first_text(raw, "sender_name", "from_name") or (sender.split("@")[0] if sender else "")

    message_type = raw.get("type")
    if message_type not in (INBOUND_EMAIL, OUTBOUND_EMAIL):
        message_type = INBOUND_EMAIL

    message_id = raw.get("id") or raw.get("response_id") or f"{conversation_id}:{position}"

    timestamp = normalize_timestamp(raw.get("timestamp"))
    sent_at = _parse_iso(timestamp) if timestamp else None
    if sent_at is None:
        logger.warning(
            "Message timestamp missing or invalid, using epoch",
            conversation_id=conversation_id,
            message_id=str(message_id),
            raw_timestamp=str(raw.get("timestamp"))[:40],
        )
        sent_at = EPOCH
        timestamp = normalize_timestamp(EPOCH)

    return Message(
        id=str(message_id),
        conversation_id=str(raw.get("conversation_id") or conversation_id),
        type=message_type,
        timestamp=timestamp,
        sent_at=sent_at,
        sender_name=sender_name,
        sender_email=sender,
        recipient=_first_text(raw, "recipient", "receiver", "to", "receiver_email") or "",
        body=_first_text(raw, "body", "content") or "",
        subject=_first_text(raw, "subject") or "",
        ev_score=normalize_ev_score(raw.get("ev_score")),
        in_reply_to=_first_text(raw, "in_reply_to"),
        is_first_email=normalize_bool(raw.get("is_first_email")),
        read=normalize_bool(raw.get("read")),
    )


def normalize_messages(raw_messages: Any, conversation_id: str) -> list[Message]:
    """Normalize a thread's message list, preserving insertion order."""
    if not isinstance(raw_messages, list | tuple):
        if raw_messages is not None:
            logger.warning("Messages payload is not a list", conversation_id=conversation_id)
        return []

    messages = []
    for position, raw in enumerate(raw_messages):
        if isinstance(raw, Message):
            messages.append(raw)
            continue
        message = normalize_message(raw, conversation_id, position)
        if message is not None:
            messages.append(message)
    return messages
