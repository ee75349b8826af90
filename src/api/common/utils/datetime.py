from datetime import datetime, timezone, timedelta
from typing import Optional


def get_current_datetime() -> datetime:
    """Return current UTC datetime with timezone info."""
    dt = datetime.now(timezone.utc)
    # Ensure microseconds are stripped for consistency in tests
    dt = dt.replace(microsecond=0)
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_within(moment: datetime, window: timedelta, now: Optional[datetime] = None) -> bool:
    """
    Check whether ``moment`` lies less than ``window`` before ``now``.

    Args:
        moment: The instant being checked
        window: Length of the validity window
        now: Reference instant, defaults to the current UTC time

    Returns:
        True while the window is still open
    """
    now = ensure_utc(now or get_current_datetime())
    return now - ensure_utc(moment) < window
