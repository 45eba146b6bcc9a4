"""Injectable wall-clock source.

All token lifecycle decisions read time through a Clock so tests can pin
"now" without patching the datetime module.
"""

from datetime import datetime, timedelta, timezone


class Clock:
    """System UTC clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_millis(self) -> int:
        return to_millis(self.now())


class FrozenClock(Clock):
    """Clock pinned to a fixed instant; advance() moves it forward."""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by timedelta(**kwargs) and return the new instant."""
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant


def to_millis(value: datetime) -> int:
    """Epoch milliseconds for an aware datetime."""
    return int(value.timestamp() * 1000)


def from_millis(millis: int) -> datetime:
    """Aware UTC datetime for epoch milliseconds."""
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


_default_clock = Clock()


def get_clock() -> Clock:
    """Dependency returning the process clock (override in tests)."""
    return _default_clock
