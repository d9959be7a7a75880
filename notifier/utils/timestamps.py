"""Timestamp utilities for UTC handling.

All timestamps in the pipeline are timezone-aware UTC datetimes. This module
provides the helpers used to obtain, normalise, parse, and compare them.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current UTC time with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    If the datetime is timezone-naive, it's treated as UTC.
    If the datetime has a different timezone, it's converted to UTC.

    Args:
        dt: Datetime to convert (can be None)

    Returns:
        Timezone-aware datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def parse_iso_datetime(iso_string: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 datetime string to UTC datetime.

    Accepts a trailing 'Z' as well as explicit offsets. Returns None for
    empty or unparseable input.
    """
    if not iso_string or not iso_string.strip():
        return None

    cleaned = iso_string.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"

    try:
        return ensure_utc(datetime.fromisoformat(cleaned))
    except ValueError:
        return None


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO 8601 UTC with a 'Z' suffix."""
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return None
    return dt_utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def add_milliseconds(dt: datetime, milliseconds: int) -> datetime:
    return ensure_utc(dt) + timedelta(milliseconds=milliseconds)


def milliseconds_until(target: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole milliseconds from now until target, never negative.

    Example:
        >>> start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        >>> milliseconds_until(start + timedelta(seconds=2), now=start)
        2000
    """
    if target is None:
        return 0
    now = ensure_utc(now) if now is not None else utc_now()
    delta = ensure_utc(target) - now
    return max(0, int(delta.total_seconds() * 1000))
