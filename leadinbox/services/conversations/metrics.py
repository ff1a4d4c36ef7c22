"""
Conversation metrics and trend calculations.

Reduces a set of processed conversations to dashboard counts and compares
two equal-length time windows to produce directional trend indicators.
"""

from __future__ import annotations

import statistics
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from leadinbox.infrastructure.observability.logging import get_logger
from leadinbox.models.domain.conversation_domain import (
    CONVERSATION_STATUSES,
    ConversationStatus,
    ProcessedConversation,
)

logger = get_logger(__name__)

TrendDirection = Literal["up", "down", "stable"]

# Changes smaller than this (in percent) are reported as stable
TREND_DEAD_BAND_PERCENT = 1.0


@dataclass(frozen=True, slots=True)
class ConversationMetrics:
    total: int = 0
    active: int = 0
    pending: int = 0
    completed: int = 0
    flagged: int = 0
    spam: int = 0
    average_ev_score: float = 0.0
    conversion_rate: float = 0.0
    percentages: dict[ConversationStatus, float] = field(default_factory=dict)

    def count(self, status: ConversationStatus) -> int:
        return getattr(self, status)


@dataclass(frozen=True, slots=True)
class TrendData:
    current: float
    previous: float
    change: float
    percent_change: float | None  # None when there is no previous baseline
    direction: TrendDirection
    previous_sample_size: int


@dataclass(frozen=True, slots=True)
class EVDataPoint:
    message_number: int
    average_ev: float
    total_messages: int


def _round2(value: float) -> float:
    return round(value, 2)


def calculate_conversation_metrics(items: Sequence[ProcessedConversation]) -> ConversationMetrics:
    """Counts per status, total, mean EV score and status percentages."""
    total = len(items)
    counts: dict[str, int] = defaultdict(int)
    for item in items:
        counts[item.status] += 1

    scores = [item.ev_score for item in items if item.ev_score is not None]
    average_ev = _round2(statistics.fmean(scores)) if scores else 0.0

    percentages = {
        status: _round2(counts[status] / total * 100) if total else 0.0
        for status in CONVERSATION_STATUSES
    }

    return ConversationMetrics(
        total=total,
        active=counts["active"],
        pending=counts["pending"],
        completed=counts["completed"],
        flagged=counts["flagged"],
        spam=counts["spam"],
        average_ev_score=average_ev,
        conversion_rate=percentages["completed"],
        percentages=percentages,
    )


def calculate_average_response_time(items: Iterable[ProcessedConversation]) -> float:
    """
    Mean minutes between an inbound message and the outbound reply that
    immediately follows it. 0 when no such pair exists.
    """
    response_minutes: list[float] = []
    for item in items:
        for current, following in zip(item.messages, item.messages[1:]):
            if current.is_inbound and not following.is_inbound:
                delta = following.sent_at - current.sent_at
                response_minutes.append(delta.total_seconds() / 60)

    if not response_minutes:
        return 0.0
    return round(statistics.fmean(response_minutes))


def calculate_average_ev_by_message(items: Iterable[ProcessedConversation]) -> list[EVDataPoint]:
    """Average EV score by message position (1-based) across conversations."""
    scores_by_position: dict[int, list[float]] = defaultdict(list)
    for item in items:
        for index, message in enumerate(item.messages, start=1):
            if message.ev_score is not None:
                scores_by_position[index].append(message.ev_score)

    return [
        EVDataPoint(
            message_number=position,
            average_ev=_round2(statistics.fmean(scores)),
            total_messages=len(scores),
        )
        for position, scores in sorted(scores_by_position.items())
    ]


def _trend_direction(percent_change: float | None) -> TrendDirection:
    if percent_change is None or abs(percent_change) < TREND_DEAD_BAND_PERCENT:
        return "stable"
    return "up" if percent_change > 0 else "down"


def build_trend(current: float, previous: float, previous_sample_size: int) -> TrendData:
    change = current - previous
    percent_change = (change / previous) * 100 if previous != 0 else None
    return TrendData(
        current=current,
        previous=previous,
        change=_round2(change),
        percent_change=_round2(percent_change) if percent_change is not None else None,
        direction=_trend_direction(percent_change),
        previous_sample_size=previous_sample_size,
    )


def _in_window(item: ProcessedConversation, start: datetime, end: datetime, *, inclusive_end: bool) -> bool:
    at = item.last_activity_at
    if at is None:
        return False
    if inclusive_end:
        return start <= at <= end
    return start <= at < end


_TREND_METRICS: dict[str, Callable[[Sequence[ProcessedConversation], ConversationMetrics], float]] = {
    "total_conversations": lambda items, metrics: metrics.total,
    "active": lambda items, metrics: metrics.active,
    "pending": lambda items, metrics: metrics.pending,
    "completed": lambda items, metrics: metrics.completed,
    "flagged": lambda items, metrics: metrics.flagged,
    "spam": lambda items, metrics: metrics.spam,
    "average_ev_score": lambda items, metrics: metrics.average_ev_score,
    "conversion_rate": lambda items, metrics: metrics.conversion_rate,
    "average_response_time": lambda items, metrics: calculate_average_response_time(items),
}


def calculate_trends(
    conversations: Iterable[ProcessedConversation],
    window_start: datetime,
    window_end: datetime,
) -> dict[str, TrendData]:
    """
    Compare the window [window_start, window_end] against the equal-length
    window immediately before it.

    Raises:
        ValueError: If window_end precedes window_start
    """
    if window_end < window_start:
        raise ValueError("window_end must not precede window_start")

    items = list(conversations)
    length = window_end - window_start
    previous_start = window_start - length

    current = [item for item in items if _in_window(item, window_start, window_end, inclusive_end=True)]
    previous = [item for item in items if _in_window(item, previous_start, window_start, inclusive_end=False)]

    current_metrics = calculate_conversation_metrics(current)
    previous_metrics = calculate_conversation_metrics(previous)

    logger.debug(
        "Calculated trend windows",
        current_count=len(current),
        previous_count=len(previous),
        window_seconds=length.total_seconds(),
    )

    return {
        name: build_trend(
            float(metric(current, current_metrics)),
            float(metric(previous, previous_metrics)),
            previous_sample_size=len(previous),
        )
        for name, metric in _TREND_METRICS.items()
    }


def should_show_trend(trend: TrendData | None) -> bool:
    """Only show trends that have a baseline and move outside the dead band."""
    if trend is None or trend.previous_sample_size == 0 or trend.percent_change is None:
        return False
    return abs(trend.percent_change) >= TREND_DEAD_BAND_PERCENT


def format_trend_change(trend: TrendData | None) -> str:
    if trend is None or trend.percent_change is None:
        return ""
    sign = "+" if trend.percent_change >= 0 else "-"
    return f"{sign}{round(abs(trend.percent_change))}%"
