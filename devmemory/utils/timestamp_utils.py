"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime to ISO-8601, treating naive values as UTC.

    Args:
        value: datetime to serialize

    Returns:
        ISO-8601 string with offset
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_iso(value: Optional[Union[str, int, float, datetime]]) -> datetime:
    """Parse a stored timestamp into an aware datetime.

    Accepts ISO-8601 strings, unix seconds or datetimes. Missing values map to the epoch.

    Args:
        value: Stored timestamp

    Returns:
        timezone-aware datetime
    """
    if value is None or value == '':
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if value.isdigit():
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def later_of(previous: datetime, candidate: Optional[datetime] = None) -> datetime:
    """Return a timestamp that never moves backwards relative to previous."""
    candidate = candidate or utc_now()
    previous = from_iso(previous)
    return candidate if candidate >= previous else previous
