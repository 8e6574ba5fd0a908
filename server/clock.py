"""
Wall-clock source for deadline comparisons.

All timestamps in the store are naive UTC, so everything that compares
against start_time/end_time goes through here.
"""
from datetime import datetime, timezone


class Clock:
    """Supplies the current time (naive UTC)."""

    def now(self) -> datetime:
        return datetime.utcnow()


system_clock = Clock()


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
