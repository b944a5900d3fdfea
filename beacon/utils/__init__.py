"""Time handling helpers shared by scheduling and dispatch."""

from .timestamps import (
    ensure_utc,
    format_timestamp,
    local_minute_of_day,
    parse_clock_time,
    parse_iso_datetime,
    resolve_timezone,
    utc_now,
)

__all__ = [
    "utc_now",
    "ensure_utc",
    "parse_iso_datetime",
    "format_timestamp",
    "resolve_timezone",
    "parse_clock_time",
    "local_minute_of_day",
]
