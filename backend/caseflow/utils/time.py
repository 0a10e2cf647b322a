"""Time Utilities - UTC timestamps and formatting"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (as returned by some drivers)"""
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


def coerce_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Accept ISO strings or datetimes for query bounds"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return parse_iso(value)


def add_minutes(dt: datetime, minutes: int) -> datetime:
    """Add minutes to datetime"""
    return dt + timedelta(minutes=minutes)


def calculate_due_at(start_time: datetime, due_minutes: int) -> datetime:
    """
    Calculate due datetime from start time and duration

    Args:
        start_time: Start datetime
        due_minutes: Minutes until due

    Returns:
        Due datetime
    """
    return add_minutes(start_time, due_minutes)


def is_overdue(due_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """
    Check if due datetime has passed

    Args:
        due_at: Due datetime or None
        now: Reference time (defaults to current UTC time)

    Returns:
        True if overdue, False otherwise
    """
    if due_at is None:
        return False
    return (now or utc_now()) > ensure_utc(due_at)


def truncate_to_millis(dt: datetime) -> datetime:
    """Drop sub-millisecond precision (BSON stores datetimes in milliseconds)"""
    return dt.replace(microsecond=dt.microsecond - dt.microsecond % 1000)


def next_monotonic(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """
    Current time at millisecond precision, bumped past ``previous``

    Keeps per-instance history timestamps strictly increasing even after
    a round trip through MongoDB.
    """
    now = truncate_to_millis(ensure_utc(now or utc_now()))
    if previous is not None:
        floor = truncate_to_millis(ensure_utc(previous)) + timedelta(milliseconds=1)
        if now < floor:
            return floor
    return now
