"""
Filter/sort pipeline over processed conversations.

Filters are AND-combined across categories (statuses are OR-combined
within their category). Sorting is stable so re-sorting unchanged data
never reorders equal keys.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from leadinbox.models.domain.conversation_domain import ConversationStatus, ProcessedConversation

from .aggregator import EV_SCORE_MAX, EV_SCORE_MIN

SortField = Literal["last_message", "ai_score", "date", "name"]
SortDirection = Literal["asc", "desc"]

FULL_EV_RANGE = (EV_SCORE_MIN, EV_SCORE_MAX)


@dataclass(frozen=True, slots=True)
class ConversationFilters:
    statuses: frozenset[ConversationStatus] = field(default_factory=frozenset)
    ev_score_range: tuple[float, float] = FULL_EV_RANGE
    date_range: tuple[datetime | None, datetime | None] = (None, None)
    search_query: str = ""
    show_pending_only: bool = False


@dataclass(frozen=True, slots=True)
class SortConfig:
    field: SortField = "last_message"
    direction: SortDirection = "desc"


def _matches_ev_range(item: ProcessedConversation, ev_range: tuple[float, float]) -> bool:
    low, high = ev_range
    if item.ev_score is None:
        # Unscored conversations only survive an unrestricted range
        return low <= EV_SCORE_MIN and high >= EV_SCORE_MAX
    return low <= item.ev_score <= high


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive bounds are UTC, like bare stored timestamps
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _matches_date_range(item: ProcessedConversation, date_range: tuple[datetime | None, datetime | None]) -> bool:
    start, end = (_as_utc(bound) for bound in date_range)
    if start is None and end is None:
        return True
    at = item.last_activity_at
    if at is None:
        return False
    if start is not None and at < start:
        return False
    if end is not None and at > end:
        return False
    return True


def _matches_search(item: ProcessedConversation, query: str) -> bool:
    needle = query.strip().lower()
    if not needle:
        return True
    thread = item.thread
    haystack = (
        thread.lead_name or "",
        thread.lead_email or "",
        thread.conversation_id,
        thread.ai_summary or "",
    )
    return any(needle in value.lower() for value in haystack)


def filter_conversations(
    items: Iterable[ProcessedConversation], filters: ConversationFilters
) -> list[ProcessedConversation]:
    """Apply a filter specification; relative order is preserved."""
    result = []
    for item in items:
        if filters.statuses and item.status not in filters.statuses:
            continue
        if not _matches_ev_range(item, filters.ev_score_range):
            continue
        if not _matches_date_range(item, filters.date_range):
            continue
        if filters.show_pending_only and item.status != "pending":
            continue
        if not _matches_search(item, filters.search_query):
            continue
        result.append(item)
    return result


_SORT_KEYS: dict[str, Callable[[ProcessedConversation], Any]] = {
    "last_message": lambda item: item.last_activity_at,
    "ai_score": lambda item: item.ev_score,
    "date": lambda item: item.thread.created_at,
    "name": lambda item: (item.thread.lead_name or "").lower() or None,
}


def sort_conversations(
    items: Iterable[ProcessedConversation], sort_config: SortConfig
) -> list[ProcessedConversation]:
    """
    Stable sort by the configured field. Missing keys (unscored, undated,
    unnamed) always sort last regardless of direction.

    Raises:
        ValueError: If the sort field is not supported
    """
    key = _SORT_KEYS.get(sort_config.field)
    if key is None:
        raise ValueError(f"Unsupported sort field: {sort_config.field}")

    items = list(items)
    keyed = [item for item in items if key(item) is not None]
    missing = [item for item in items if key(item) is None]

    keyed.sort(key=key, reverse=sort_config.direction == "desc")
    return keyed + missing


def apply_view(
    items: Iterable[ProcessedConversation],
    filters: ConversationFilters | None = None,
    sort_config: SortConfig | None = None,
) -> list[ProcessedConversation]:
    """Filter then sort, the order the inbox list uses."""
    result = filter_conversations(items, filters or ConversationFilters())
    return sort_conversations(result, sort_config or SortConfig())
