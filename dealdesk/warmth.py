"""Relationship warmth: a 1-10 decay score derived from touchpoint history.

Weighted blend of three components over a rolling 90-day window:

- **Recency** (40%) - step-decay on days since the last touchpoint.
- **Frequency** (30%) - two points per touchpoint, capped at 10.
- **Context** (30%) - meetings, calls and coffees count three points,
  everything else one, capped at 10.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from dealdesk.utils import as_naive_utc, days_between, utc_now

WINDOW_DAYS = 90
HIGH_CONTEXT_TYPES = frozenset({"meeting", "call", "coffee"})
DEFAULT_WARMTH = 5.0

# (max days since last touchpoint, recency score)
_RECENCY_STEPS: tuple[tuple[int, float], ...] = (
    (7, 10.0),
    (14, 8.0),
    (30, 6.0),
    (60, 4.0),
    (90, 2.0),
)

WEIGHT_RECENCY = 0.4
WEIGHT_FREQUENCY = 0.3
WEIGHT_CONTEXT = 0.3


@dataclass
class WarmthBreakdown:
    warmth_score: float
    recency_score: float
    frequency_score: float
    context_score: float
    days_since_last: int | None
    touchpoints_90d: int
    meetings_90d: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def recency_score(days_since_last: int | None) -> float:
    if days_since_last is None:
        return 1.0
    for limit, score in _RECENCY_STEPS:
        if days_since_last <= limit:
            return score
    return 1.0


def _unpack(tp: Any) -> tuple[str, datetime]:
    if isinstance(tp, tuple):
        kind, when = tp
    elif isinstance(tp, dict):
        kind, when = tp.get("type", ""), tp.get("date")
    else:
        kind, when = tp.type, tp.date
    return (kind or "").lower(), as_naive_utc(when)


def calculate_warmth(
    touchpoints: Iterable[Any], now: datetime | date | None = None,
) -> WarmthBreakdown:
    """Score a relationship from its touchpoints.

    Touchpoints may be ORM ``Touchpoint`` rows, ``{"type", "date"}`` dicts,
    or ``(type, date)`` tuples.
    """
    now = as_naive_utc(now) if now is not None else utc_now()
    events = [_unpack(tp) for tp in touchpoints]

    days_since_last = days_between(max(when for _, when in events), now) if events else None
    window_start = now - timedelta(days=WINDOW_DAYS)
    recent = [(kind, when) for kind, when in events if when > window_start]
    count = len(recent)
    meetings = sum(1 for kind, _ in recent if kind in HIGH_CONTEXT_TYPES)

    recency = recency_score(days_since_last)
    frequency = min(count * 2.0, 10.0)
    context = min(meetings * 3.0 + (count - meetings) * 1.0, 10.0)
    total = recency * WEIGHT_RECENCY + frequency * WEIGHT_FREQUENCY + context * WEIGHT_CONTEXT

    return WarmthBreakdown(
        warmth_score=round(total, 1),
        recency_score=recency,
        frequency_score=frequency,
        context_score=context,
        days_since_last=days_since_last,
        touchpoints_90d=count,
        meetings_90d=meetings,
    )


def warmth_level(score: float | None) -> str:
    """Bucket a warmth score: ``hot`` (>=7), ``warm`` (>=4) or ``cold``."""
    value = DEFAULT_WARMTH if score is None else score
    if value >= 7:
        return "hot"
    if value >= 4:
        return "warm"
    return "cold"
