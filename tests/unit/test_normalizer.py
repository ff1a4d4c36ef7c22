"""
Tests for raw record normalization.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from leadinbox.services.conversations.normalizer import (
    EPOCH,
    normalize_bool,
    normalize_ev_score,
    normalize_message,
    normalize_messages,
    normalize_thread,
    normalize_timestamp,
    parse_timestamp,
)


@pytest.mark.parametrize(
    "value,expected",
    [
        (True, True),
        ("true", True),
        ("TRUE", True),
        (" True ", True),
        (1, True),
        (False, False),
        ("false", False),
        ("yes", False),
        ("", False),
        (None, False),
        (0, False),
        ([], False),
    ],
)
def test_normalize_bool(value, expected):
    assert normalize_bool(value) is expected


def test_bare_timestamp_gets_utc_suffix():
    assert normalize_timestamp("2024-01-01T10:00:00") == "2024-01-01T10:00:00Z"
    assert normalize_timestamp("2025-06-18T02:24:04.542130") == "2025-06-18T02:24:04.542130Z"


def test_zoned_timestamp_is_unchanged():
    assert normalize_timestamp("2024-01-01T10:00:00-05:00") == "2024-01-01T10:00:00-05:00"
    assert normalize_timestamp("2024-01-01T10:00:00Z") == "2024-01-01T10:00:00Z"


@pytest.mark.parametrize("raw", [None, "", "not a date", "2024-13-45T99:00:00", 12345])
def test_unparseable_timestamp_is_none(raw):
    assert normalize_timestamp(raw) is None
    assert parse_timestamp(raw) is None


def test_parse_timestamp_keeps_offset():
    parsed = parse_timestamp("2024-01-01T10:00:00-05:00")
    assert parsed.utcoffset() == timedelta(hours=-5)
    assert parsed.astimezone(UTC) == datetime(2024, 1, 1, 15, 0, tzinfo=UTC)


def test_parse_timestamp_treats_bare_as_utc():
    assert parse_timestamp("2024-01-01T10:00:00") == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)


def test_naive_datetime_input_is_utc():
    normalized = normalize_timestamp(datetime(2024, 1, 1, 10, 0))
    assert normalized == "2024-01-01T10:00:00Z"
    assert normalize_timestamp(datetime(2024, 1, 1, 10, 0, tzinfo=UTC)) == normalize_timestamp("2024-01-01T10:00:00")
    aware = datetime(2024, 1, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
    assert normalize_timestamp(aware) == "2024-01-01T10:00:00+02:00"


@pytest.mark.parametrize(
    "raw,expected",
    [(55, 55.0), ("72.5", 72.5), (0, 0.0), (None, None), (True, None), ("n/a", None), (float("nan"), None)],
)
def test_normalize_ev_score(raw, expected):
    assert normalize_ev_score(raw) == expected


def test_normalize_thread_applies_field_fallbacks():
    thread = normalize_thread(
        {
            "id": "conv-9",
            "client_name": "Casey",
            "email": "casey@example.com",
            "phone_number": "555-0100",
            "city": "Austin",
            "summary": "Wants a duplex",
            "budget": "$400k",
            "timeframe": "3 months",
            "property_types": "duplex",
            "spam": "TRUE",
            "lcp_flag_threshold": "65",
            "created_at": "2024-06-01T09:00:00",
            "last_updated": "2024-06-02T09:00:00Z",
        }
    )

    assert thread.conversation_id == "conv-9"
    assert thread.lead_name == "Casey"
    assert thread.lead_email == "casey@example.com"
    assert thread.source_contact.phone == "555-0100"
    assert thread.source_contact.location == "Austin"
    assert thread.ai_summary == "Wants a duplex"
    assert thread.budget_range == "$400k"
    assert thread.timeline == "3 months"
    assert thread.preferred_property_types == "duplex"
    assert thread.spam is True
    assert thread.read is False
    assert thread.lcp_flag_threshold == 65.0
    assert thread.created_at == datetime(2024, 6, 1, 9, 0, tzinfo=UTC)
    assert thread.last_message_at == datetime(2024, 6, 2, 9, 0, tzinfo=UTC)


def test_normalize_thread_accepts_envelope():
    thread = normalize_thread({"thread": {"conversation_id": "conv-1", "lead_name": "Ann"}})
    assert thread.conversation_id == "conv-1"
    assert thread.lead_name == "Ann"
    assert thread.lcp_flag_threshold == 70.0


def test_normalize_thread_drops_records_without_id_or_deleted():
    assert normalize_thread({"lead_name": "Nobody"}) is None
    assert normalize_thread({"conversation_id": "conv-1", "deleted": "true"}) is None
    assert normalize_thread("garbage") is None


def test_normalize_message_defaults():
    message = normalize_message({"from": "lead@example.com", "content": "Hi", "timestamp": "bad"}, "conv-1", 3)

    assert message.id == "conv-1:3"
    assert message.type == "inbound-email"
    assert message.sender_email == "lead@example.com"
    assert message.sender_name == "lead"
    assert message.body == "Hi"
    assert message.sent_at == EPOCH
    assert message.ev_score is None


def test_normalize_message_keeps_unscored_as_none():
    message = normalize_message(
        {"id": "m1", "type": "outbound-email", "timestamp": "2024-01-01T10:00:00", "ev_score": None},
        "conv-1",
    )
    assert message.ev_score is None
    assert message.timestamp == "2024-01-01T10:00:00Z"
    assert not message.is_inbound


def test_normalize_messages_skips_garbage_and_keeps_order():
    messages = normalize_messages(
        [
            {"id": "a", "timestamp": "2024-01-01T10:00:00Z"},
            "not a record",
            {"id": "b", "timestamp": "2024-01-01T09:00:00Z"},
        ],
        "conv-1",
    )
    assert [message.id for message in messages] == ["a", "b"]
    assert normalize_messages(None, "conv-1") == []
