"""Timestamp helpers shared by the parser, normalizer and storage layers."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from stix2.utils import parse_into_datetime

# Fixed-width so that string comparison in SQLite matches time order
TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC timestamp string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a STIX/ISO timestamp into an aware UTC datetime.

    Args:
        value: String, datetime or None

    Returns:
        Parsed datetime, or None if value is empty

    Raises:
        ValueError: If the value is not a recognizable timestamp
    """
    if value is None or value == '':
        return None
    parsed = parse_into_datetime(value)
    return datetime(parsed.year, parsed.month, parsed.day, parsed.hour,
                    parsed.minute, parsed.second, parsed.microsecond,
                    tzinfo=timezone.utc)


def normalize_timestamp(value: Any) -> Optional[str]:
    """Parse any timestamp and re-emit it in the storage format."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return format_timestamp(parsed)


def add_minutes(value: datetime, minutes: float) -> datetime:
    return value + timedelta(minutes=minutes)


def later_of(first: Optional[str], second: Optional[str]) -> Optional[str]:
    """Return the later of two storage-format timestamps, ignoring Nones."""
    if first is None:
        return second
    if second is None:
        return first
    return max(first, second)


def earlier_of(first: Optional[str], second: Optional[str]) -> Optional[str]:
    """Return the earlier of two storage-format timestamps, ignoring Nones."""
    if first is None:
        return second
    if second is None:
        return first
    return min(first, second)
