"""
DateTime utility functions - all operations use UTC.
Database columns hold naive UTC datetimes so SQLite and MySQL compare them the same way.
"""
from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """
    Get current UTC datetime as a naive value.
    Use this for ALL datetime operations - database storage, timeout math, audit timestamps.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to naive UTC.
    Naive values are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_isoformat(dt: Optional[datetime]) -> Optional[str]:
    """
    Convert datetime to an ISO 8601 string with a trailing Z.
    Used for API responses (e.g. "2024-12-17T14:30:00Z").
    """
    utc_dt = to_utc(dt)
    if utc_dt is None:
        return None
    return utc_dt.replace(microsecond=0).isoformat() + "Z"


def seconds_between(start: Optional[datetime], end: Optional[datetime]) -> int:
    """Whole seconds elapsed from start to end (0 when either side is missing)."""
    if start is None or end is None:
        return 0
    return int((to_utc(end) - to_utc(start)).total_seconds())
