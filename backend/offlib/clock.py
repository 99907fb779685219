"""Time source for leases and opening windows."""
from datetime import datetime, timezone
from typing import Optional


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock, always timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def to_epoch(value: datetime) -> float:
    return value.timestamp()


def from_epoch(value) -> Optional[datetime]:
    """Inverse of to_epoch; 0 / empty means 'not set'."""
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)
