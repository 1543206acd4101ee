"""
UTC datetime utilities.

Upstream timestamps are ISO 8601 strings in UTC. Daily summaries bucket by UTC
calendar day. The database stores naive UTC datetimes, so everything crossing
the persistence boundary goes through ``to_db``.
"""

from datetime import date, datetime, timedelta
from typing import Optional

import pytz

UTC = pytz.utc


def utcnow() -> datetime:
    """
    Get current UTC datetime.

    Returns:
        Timezone-aware datetime in UTC
    """
    return datetime.now(UTC)


def to_utc(dt: datetime) -> datetime:
    """
    Convert datetime to UTC.

    Args:
        dt: Input datetime (naive values are taken to be UTC already)

    Returns:
        Timezone-aware datetime in UTC
    """
    if dt.tzinfo is None:
        return UTC.localize(dt)

    return dt.astimezone(UTC)


def to_db(dt: datetime) -> datetime:
    """Convert datetime to the naive UTC form stored in the database."""
    return to_utc(dt).replace(tzinfo=None)


def parse_iso(dt_str: Optional[str]) -> Optional[datetime]:
    """
    Parse ISO 8601 datetime string to timezone-aware UTC datetime.

    Args:
        dt_str: ISO 8601 datetime string

    Returns:
        Timezone-aware datetime, or None when the value is missing or invalid

    Examples:
        >>> parse_iso("2025-01-15T10:30:00Z")
        >>> parse_iso("2025-01-15T10:30:00.000+01:00")
    """
    if not dt_str or not isinstance(dt_str, str):
        return None

    try:
        dt = datetime.fromisoformat(dt_str.strip().replace("Z", "+00:00"))
    except ValueError:
        return None

    return to_utc(dt)


def format_iso(dt: datetime) -> str:
    """
    Format datetime as ISO 8601 string in UTC with millisecond precision.

    Args:
        dt: Datetime to format

    Returns:
        ISO 8601 string (e.g., "2025-01-15T09:30:00.000Z")
    """
    utc_dt = to_utc(dt)
    return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond // 1000:03d}Z"


def date_key(dt: datetime) -> date:
    """UTC calendar day a datetime falls on."""
    return to_utc(dt).date()


def date_range(start: date, end: date) -> list[date]:
    """
    Inclusive list of calendar days between two dates.

    Args:
        start: First day
        end: Last day

    Returns:
        Days in ascending order (empty when end precedes start)
    """
    days = (end - start).days
    return [start + timedelta(days=offset) for offset in range(days + 1)]


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Naive UTC [start, next-start) bounds of a calendar day for DB queries."""
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)
