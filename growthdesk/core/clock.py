"""Injectable time source for the engines."""
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Wall clock returning UTC-aware datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock(Clock):
    """
    Clock pinned to a fixed instant, moved forward explicitly.

    Used by tests and by replaying jobs for a given moment.
    """

    def __init__(self, at: datetime):
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._now = at

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._now = at

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        self._now = self._now + (delta or timedelta(**kwargs))
        return self._now


system_clock = Clock()
