"""
UTC time helpers

Timestamps are stored as naive UTC datetimes so they compare the same way on
PostgreSQL and SQLite.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an incoming (possibly tz-aware) datetime to naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def seconds_until(moment: datetime, now: Optional[datetime] = None) -> int:
    """Whole seconds from now until moment, never negative"""
    now = now or utcnow()
    return max(int((moment - now).total_seconds()), 0)
