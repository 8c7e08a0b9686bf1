"""
Timezone utilities for ordering trips by start time.

Trip start dates arrive from several places: PostgreSQL returns aware
datetimes, SQLite returns naive ones, and API callers send either. Ordering
a vehicle's sequence mixes all of them, and comparing aware with naive
datetimes raises TypeError, so every comparison goes through
normalize_datetime().
"""

from datetime import datetime, timezone as tz
from typing import Optional


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (database compatible)."""
    return datetime.now(tz.utc).replace(tzinfo=None)


def normalize_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a datetime to naive UTC for safe comparisons.

    Args:
        dt: A datetime that may or may not have timezone info

    Returns:
        Naive datetime in UTC, or None if input was None

    Examples:
        >>> aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        >>> normalize_datetime(aware)
        datetime.datetime(2024, 1, 1, 12, 0)
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        if dt.tzinfo != tz.utc:
            dt = dt.astimezone(tz.utc)
        return dt.replace(tzinfo=None)

    return dt


def parse_iso_datetime(value) -> Optional[datetime]:
    """
    Parse an ISO 8601 string (``Z`` suffix allowed) into naive UTC.

    Returns None for empty or unparseable input.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return normalize_datetime(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except (ValueError, TypeError):
        return None
    return normalize_datetime(parsed)
