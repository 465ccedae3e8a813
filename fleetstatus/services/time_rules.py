"""
Time rules for status tracking.
Handles UTC normalization, aggregation windows and elapsed-time labels.
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple
import pytz


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Return a timezone-aware UTC datetime.

    Naive values are treated as UTC: that is how they are written, and some
    backends (SQLite) hand them back without tzinfo.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def window_bounds(now: datetime, window_days: int) -> Tuple[datetime, datetime]:
    """
    Compute a rolling aggregation window ending at ``now``.

    Args:
        now: Window end (UTC)
        window_days: Window length in days, must be positive

    Returns:
        (window_start, window_end)
    """
    if window_days <= 0:
        raise ValueError("window_days must be positive")
    window_end = ensure_utc(now)
    return window_end - timedelta(days=window_days), window_end


def humanize_elapsed(then: datetime, now: datetime) -> str:
    """Short label for how long ago ``then`` was, e.g. "3 days ago"."""
    seconds = int((ensure_utc(now) - ensure_utc(then)).total_seconds())
    if seconds < 60:
        return "just now"
    for unit_seconds, unit in ((86400, "day"), (3600, "hour"), (60, "minute")):
        if seconds >= unit_seconds:
            value = seconds // unit_seconds
            return f"{value} {unit}{'s' if value != 1 else ''} ago"
    return "just now"
