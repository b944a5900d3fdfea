"""Cron expression parsing and next-run computation.

Supports the classic five-field syntax (minute, hour, day-of-month, month,
day-of-week). Each field accepts `*`, single values, ranges (`a-b`), steps
(`*/n`, `a-b/n`) and comma lists. Day-of-week 7 is Sunday, same as 0.
Field expansion and matching are done by croniter.

All five fields must match for an instant to fire (croniter `day_or=False`).
Matching happens on the wall clock of the schedule's timezone; the returned
instant is UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, Union

from croniter import CroniterBadDateError, CroniterError, croniter

from beacon.utils.timestamps import ensure_utc, resolve_timezone, utc_now

from .exceptions import InvalidCronError, NoUpcomingRunError

# One year of minutes, leap years included
SEARCH_HORIZON = timedelta(days=366)

CRON_FIELD_COUNT = 5


@dataclass(frozen=True)
class CronExpression:
    """A validated five-field cron expression."""

    expression: str

    def iter_wall_clock(self, start: datetime) -> croniter:
        """Iterate matching naive wall-clock times strictly after `start`."""
        return croniter(self.expression, start, day_or=False)


def parse_cron(expression: str) -> CronExpression:
    """Parse a five-field cron expression.

    Args:
        expression: Cron expression such as "0 2 * * *" or "*/15 9-17 * * 1-5"

    Returns:
        CronExpression holding the whitespace-normalized expression

    Raises:
        InvalidCronError: If the expression is malformed
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidCronError("Cron expression must be a non-empty string", str(expression))

    parts = expression.split()
    if len(parts) != CRON_FIELD_COUNT:
        raise InvalidCronError(
            f"Cron expression must have 5 fields (minute hour day month weekday), "
            f"got {len(parts)}: '{expression}'",
            expression,
        )

    normalized = " ".join(parts)
    try:
        croniter(normalized, day_or=False)
    except (CroniterError, ValueError) as e:
        raise InvalidCronError(f"Invalid cron expression '{normalized}': {e}", expression) from e

    return CronExpression(expression=normalized)


def next_run(
    expression: Union[str, CronExpression],
    timezone_name: Optional[str] = None,
    after: Optional[datetime] = None,
) -> datetime:
    """Compute the first instant strictly after `after` that matches the expression.

    croniter walks naive wall-clock times of the schedule's timezone starting
    at `after` (seconds dropped); each candidate is then mapped to UTC.
    Wall-clock times that do not exist because of a DST jump are skipped;
    ambiguous times resolve to their first occurrence.

    Args:
        expression: Cron expression string or pre-parsed CronExpression
        timezone_name: IANA timezone for interpreting the fields (default UTC)
        after: Reference instant (default now); naive values are treated as UTC

    Returns:
        Timezone-aware UTC datetime of the next run

    Raises:
        InvalidCronError: If the expression or timezone is invalid
        NoUpcomingRunError: If nothing matches within one year
    """
    cron = expression if isinstance(expression, CronExpression) else parse_cron(expression)
    tz = _resolve_tz(timezone_name, cron.expression)
    after_utc = ensure_utc(after) if after is not None else utc_now()

    local_after = after_utc.astimezone(tz).replace(tzinfo=None, second=0, microsecond=0)
    limit = local_after + SEARCH_HORIZON

    try:
        iterator = cron.iter_wall_clock(local_after)
        candidate = iterator.get_next(datetime)
        while candidate <= limit:
            instant = _resolve_wall_time(candidate, tz, after_utc)
            if instant is not None:
                return instant
            candidate = iterator.get_next(datetime)
    except CroniterBadDateError:
        pass

    raise NoUpcomingRunError(
        f"No run of '{cron.expression}' within {SEARCH_HORIZON.days} days "
        f"after {after_utc.isoformat()}",
        cron.expression,
    )


def validate_cron(expression: str, timezone_name: Optional[str] = None) -> CronExpression:
    """Parse an expression and check its timezone, returning the parsed form."""
    cron = parse_cron(expression)
    _resolve_tz(timezone_name, cron.expression)
    return cron


def _resolve_tz(timezone_name: Optional[str], expression: str) -> tzinfo:
    try:
        return resolve_timezone(timezone_name)
    except ValueError as e:
        raise InvalidCronError(str(e), expression) from e


def _resolve_wall_time(local: datetime, tz: tzinfo, after_utc: datetime) -> Optional[datetime]:
    """Map a naive wall-clock time to the earliest UTC instant after `after_utc`.

    Args:
        local: Naive wall-clock datetime produced by croniter
        tz: Timezone the wall clock belongs to
        after_utc: Exclusive lower bound

    Returns:
        UTC instant, or None if the time falls in a DST gap or is not after the bound
    """
    for fold in (0, 1):
        instant = local.replace(tzinfo=tz, fold=fold).astimezone(timezone.utc)
        # Times inside a DST gap do not survive the round trip
        if instant.astimezone(tz).replace(tzinfo=None) != local:
            continue
        if instant > after_utc:
            return instant
    return None
