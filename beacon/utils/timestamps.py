"""Timestamp utilities for UTC handling and timezone-local clock arithmetic.

All instants handled by the service are timezone-aware UTC datetimes.
Timezone names (IANA, e.g. "Europe/Berlin") are only used to interpret
wall-clock values such as cron fields, quiet hours and rule time windows.
"""

import re
from datetime import datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Example:
        >>> utc_now().tzinfo == timezone.utc
        True
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    Naive datetimes are treated as UTC; aware datetimes are converted.

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
    """Parse an ISO 8601 datetime string to a UTC datetime.

    Accepts a trailing 'Z' as well as explicit offsets. Returns None when the
    value is empty or cannot be parsed.

    Example:
        >>> parse_iso_datetime("2024-01-01T02:00:00Z").hour
        2
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


def format_timestamp(dt: Optional[datetime], include_microseconds: bool = False) -> str:
    """Format a datetime as ISO 8601 UTC with a 'Z' suffix.

    Example:
        >>> format_timestamp(datetime(2025, 11, 4, 12, 0, tzinfo=timezone.utc))
        '2025-11-04T12:00:00Z'
    """
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return ""

    if include_microseconds:
        return dt_utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return dt_utc.strftime("%Y-%m-%dT%H:%M:%SZ")


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Resolve an IANA timezone name, defaulting to UTC.

    Args:
        name: Timezone name such as "America/New_York", or None/"UTC"

    Returns:
        tzinfo instance

    Raises:
        ValueError: If the name is not a known timezone
    """
    if not name or name.upper() in ("UTC", "Z"):
        return timezone.utc

    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: '{name}'") from e


def parse_clock_time(value: str) -> int:
    """Parse an HH:MM wall-clock value into minutes after midnight.

    Example:
        >>> parse_clock_time("22:30")
        1350

    Raises:
        ValueError: If the value is not a valid 24h clock time
    """
    match = _CLOCK_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid clock time: '{value}'. Expected HH:MM")

    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid clock time: '{value}'. Hours 0-23, minutes 0-59")

    return hours * 60 + minutes


def local_minute_of_day(instant: datetime, tz: tzinfo) -> int:
    """Return minutes after local midnight for an instant viewed in `tz`."""
    local = ensure_utc(instant).astimezone(tz)
    return local.hour * 60 + local.minute
