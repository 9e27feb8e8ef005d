"""
core/timeutil.py -- UTC clock and ISO 8601 helpers used by every store.

Timestamps are persisted as ISO 8601 strings with fixed microsecond precision
so that string order equals time order. This lets stores compare timestamps
in SQL (e.g. "created_at >= :cutoff") without database-specific date functions.

Components accept a `clock` callable defaulting to utcnow so tests can move
time forward without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Serialize an aware datetime as UTC ISO 8601 with microseconds. None passes through."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 string. Naive values are treated as UTC.

    Returns None for empty or malformed input -- a corrupt timestamp column
    should read as "unset", not take the request down.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
