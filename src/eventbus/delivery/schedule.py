"""
Module: delivery/schedule.py
Description: Cron evaluation for recurring events.

Wraps croniter so the rest of the event bus deals with one error type
and with "no next run" as a plain None.
"""

from datetime import datetime
from typing import Optional

from croniter import croniter
from croniter.croniter import CroniterBadCronError, CroniterBadDateError, CroniterError

from eventbus.exceptions import InvalidCronExpression
from eventbus.utils.timeutils import ensure_utc


def validate_cron(expression: str) -> str:
    """
    Validate a cron expression.

    Raises:
        InvalidCronExpression: If croniter rejects the expression
    """
    if not expression or not isinstance(expression, str):
        raise InvalidCronExpression("cron expression must be a non-empty string")
    if not croniter.is_valid(expression):
        raise InvalidCronExpression(f"Invalid cron expression: {expression!r}")
    return expression


def next_cron_run(expression: str, now: datetime) -> Optional[datetime]:
    """
    Compute the next run of a cron expression strictly after `now`.

    Args:
        expression: Five-field cron expression (evaluated in UTC)
        now: Reference instant

    Returns:
        Next run as an aware UTC datetime, or None when the expression
        has no future run

    Raises:
        InvalidCronExpression: If the expression is malformed
    """
    start = ensure_utc(now)
    try:
        iterator = croniter(expression, start)
        next_run = iterator.get_next(datetime)
    except CroniterBadDateError:
        return None
    except (CroniterBadCronError, CroniterError, ValueError, KeyError) as e:
        raise InvalidCronExpression(f"Invalid cron expression {expression!r}: {e}") from e

    next_run = ensure_utc(next_run)
    if next_run <= start:
        return None
    return next_run
