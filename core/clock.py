"""
core/clock.py -- Wall-clock source and timestamp serialization.

Every time-sensitive service takes a `clock` callable at construction instead
of calling datetime.now() inline. Production code passes utc_now; tests pass a
pinned clock they can advance, which makes expiry boundaries deterministic.

Timestamps are stored as ISO 8601 text (same convention as the rest of the
stores). to_iso() always emits UTC with microseconds so two stored values
compare correctly as plain strings inside SQL WHERE clauses.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp. Naive values are treated as UTC."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
