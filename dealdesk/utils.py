"""Shared utility functions used across DealDesk modules."""
from __future__ import annotations

import json
from datetime import UTC, date, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (SQLite drops tzinfo on round-trip)."""
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime | date | str) -> datetime:
    """Coerce a datetime, date, or ISO string to naive UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def days_between(start: datetime | date | str, end: datetime | date | str) -> int:
    """Whole days from *start* to *end*, truncated toward zero."""
    delta = as_naive_utc(end) - as_naive_utc(start)
    return int(delta.total_seconds() / 86400)


def iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None
