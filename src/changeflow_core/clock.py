"""Injectable time source for the lifecycle engine and scheduler."""
from datetime import datetime, timedelta

from .models import utcnow


class Clock:
    """Production clock returning naive UTC timestamps."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock(Clock):
    """Clock pinned to a given instant; advance() moves it forward."""

    def __init__(self, current: datetime):
        self._current = current

    def now(self) -> datetime:
        return self._current

    def advance(self, delta: timedelta) -> datetime:
        self._current = self._current + delta
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current


system_clock = Clock()
