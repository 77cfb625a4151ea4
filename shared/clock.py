"""
Injectable clock.

Every "now" comparison of the engine (ban activity, cancel-before-start,
admission horizon, leaderboard windows) goes through a Clock so tests
can pin or advance time.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Wall clock returning timezone-aware UTC instants."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock(Clock):
    """
    Clock pinned to a fixed instant that only moves when told to.

    Example:
        >>> clock = FrozenClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
        >>> clock.advance(hours=2)
        >>> clock.now().hour
        2
    """

    def __init__(self, at: Optional[datetime] = None):
        self._now = at or datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime):
        self._now = at

    def advance(self, **kwargs):
        self._now = self._now + timedelta(**kwargs)


system_clock = Clock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process clock."""
    return system_clock
