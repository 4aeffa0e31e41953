"""Cron expression and time zone helpers for scheduled definitions."""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from daycycle.utils.errors import SchedulingError


def validate_cron_expression(expression: str) -> str:
    """Check a five-field cron expression.

    Raises:
        SchedulingError: If croniter cannot parse the expression
    """
    expression = (expression or "").strip()
    if not expression or not croniter.is_valid(expression):
        raise SchedulingError(
            f"Invalid cron expression: '{expression}'",
            suggestions=["Use five fields: minute hour day-of-month month day-of-week, e.g. '0 6 * * 1-5'"]
        )
    return expression


def validate_time_zone(name: str) -> ZoneInfo:
    """Resolve an IANA time zone name.

    Raises:
        SchedulingError: If the zone is unknown
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulingError(
            f"Unknown time zone: '{name}'",
            cause=e,
            suggestions=["Use an IANA zone name such as 'UTC' or 'Europe/London'"]
        )


def next_execution_time(
    expression: str,
    time_zone: str = "UTC",
    after: Optional[datetime] = None
) -> datetime:
    """Next time the expression fires after a given instant.

    The expression is evaluated in the definition's time zone, so "0 6 * * *"
    in Europe/London means 06:00 local time across DST changes.

    Args:
        expression: Cron expression
        time_zone: IANA zone the expression is written in
        after: Reference instant; naive values are taken as UTC. Defaults to now.

    Returns:
        Next execution time in UTC
    """
    expression = validate_cron_expression(expression)
    zone = validate_time_zone(time_zone)

    after = after or datetime.now(timezone.utc)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    local_next = croniter(expression, after.astimezone(zone)).get_next(datetime)
    return local_next.astimezone(timezone.utc)
