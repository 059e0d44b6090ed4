"""
Clock
=====

Time source for deadline and breach logic.

All instants are timezone-aware UTC so that comparisons never depend on the
server's local wall clock or DST.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Supplies the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""


class SystemClock(Clock):
    """Real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Manually driven clock for tests and simulations.

    Time only moves when ``advance`` or ``set`` is called.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start or datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, **delta: float) -> datetime:
        """Move forward by a ``timedelta(**delta)`` and return the new instant."""
        step = timedelta(**delta)
        if step < timedelta(0):
            raise ValueError("FixedClock cannot move backwards")
        self._now = self._now + step
        return self._now
