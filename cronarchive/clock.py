"""Clock abstraction used for every "now" decision."""
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Clock pinned to a given instant; can be moved forward manually."""

    def __init__(self, current: datetime):
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        """Move the clock forward by a timedelta built from kwargs."""
        self.current = self.current + timedelta(**kwargs)
