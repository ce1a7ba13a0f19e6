"""Time Utilities - UTC timestamps, parsing and elapsed-time helpers"""
from datetime import datetime, timezone, timedelta
from typing import Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes

    MongoDB hands back naive datetimes even though everything is stored in UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def days_since(dt: datetime, now: Optional[datetime] = None) -> float:
    """
    Fractional days elapsed since the given datetime

    Returns:
        Positive if in past, negative if in future
    """
    now = ensure_utc(now) if now is not None else utc_now()
    return (now - ensure_utc(dt)) / timedelta(days=1)


def is_older_than(dt: datetime, days: float, now: Optional[datetime] = None) -> bool:
    """True when strictly more than `days` have elapsed since dt"""
    now = ensure_utc(now) if now is not None else utc_now()
    return now - ensure_utc(dt) > timedelta(days=days)
