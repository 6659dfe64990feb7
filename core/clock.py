"""
core/clock.py -- Injectable time source and UTC timestamp helpers.

Every expiry decision (verification links, reset links, invites, JWTs) reads
the time through a Clock so tests can pin "now" instead of sleeping.

Timestamps are persisted as ISO 8601 strings. to_iso() always emits
microseconds and a +00:00 offset, which keeps lexical order equal to
chronological order -- stores compare expiry columns with plain SQL < and >.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """A clock that only moves when told to. Used by tests."""

    def __init__(self, at: Optional[datetime] = None) -> None:
        self._now = at or datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta built from kwargs (days=, hours=, seconds=...)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, at: datetime) -> None:
        self._now = at


def to_iso(dt: datetime) -> str:
    """Render an aware datetime as a fixed-width UTC ISO 8601 string.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO 8601 string back into an aware UTC datetime."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
