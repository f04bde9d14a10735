"""Time Utilities - UTC timestamps and formatting"""
from datetime import datetime, timezone, timedelta
from typing import Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (MongoDB returns naive UTC values)"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


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


def add_minutes(dt: datetime, minutes: float) -> datetime:
    """Add minutes to datetime"""
    return dt + timedelta(minutes=minutes)


def calculate_deadline(start_time: datetime, minutes: Optional[float]) -> Optional[datetime]:
    """
    Calculate a deadline from a start time and a duration

    Returns None when no duration is configured (wait indefinitely).
    """
    if minutes is None:
        return None
    return add_minutes(start_time, minutes)


def is_past(deadline: Optional[datetime], now: datetime) -> bool:
    """Check whether a deadline has passed; no deadline never passes"""
    if deadline is None:
        return False
    return ensure_utc(now) >= ensure_utc(deadline)


def minutes_between(start: datetime, end: datetime) -> float:
    """Minutes elapsed between two datetimes"""
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 60


def to_timedelta(duration: int, unit: str) -> timedelta:
    """Convert a (duration, unit) pair into a timedelta"""
    if unit == "minutes":
        return timedelta(minutes=duration)
    if unit == "hours":
        return timedelta(hours=duration)
    if unit == "days":
        return timedelta(days=duration)
    raise ValueError(f"Unsupported time unit: {unit}")
