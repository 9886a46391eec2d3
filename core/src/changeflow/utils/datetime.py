"""DateTime utilities for commit timestamps and retention arithmetic."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def get_current_timestamp() -> datetime:
    """Get current UTC timestamp.

    Returns:
        Current timezone-aware UTC datetime
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as a timezone-aware UTC datetime.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_since(start: Optional[datetime], now: datetime) -> Optional[timedelta]:
    """Time elapsed between ``start`` and ``now``, or None when ``start`` is unset."""
    if start is None:
        return None
    return ensure_utc(now) - ensure_utc(start)


def format_duration(value: Optional[timedelta]) -> str:
    """Render a duration the way introspection views show target lag.

    Example:
        >>> format_duration(timedelta(minutes=5))
        '5 minutes'
    """
    if value is None:
        return "n/a"
    seconds = int(value.total_seconds())
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds and seconds % size == 0:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"
