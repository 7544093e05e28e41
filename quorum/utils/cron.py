"""Cron expression helpers.

Expressions have five fields (minute precision) or six with a leading
seconds field, the form ``interval_to_cron`` produces for sub-minute
intervals. Evaluation is in UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from croniter import croniter


def interval_to_cron(seconds: int) -> str:
    """Convert a plain "every N seconds" interval into a cron expression."""
    if seconds < 60:
        return f"*/{max(seconds, 1)} * * * * *"
    minutes = seconds // 60
    if minutes < 60:
        return f"*/{minutes} * * * *"
    hours = minutes // 60
    if hours < 24:
        return f"0 */{hours} * * *"
    return "0 9 * * *"


def _croniter_form(expression: str) -> str:
    fields = expression.split()
    if len(fields) == 6:
        # croniter reads seconds from the last field
        fields = fields[1:] + fields[:1]
    elif len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 or 6 fields: {expression!r}")
    return " ".join(fields)


def validate_cron(expression: str) -> str:
    """Return ``expression`` unchanged, raising ``ValueError`` if croniter rejects it."""
    if not croniter.is_valid(_croniter_form(expression)):
        raise ValueError(f"Invalid cron expression: {expression!r}")
    return expression


def next_run(expression: str, after: Optional[datetime] = None) -> datetime:
    """Return the first time ``expression`` fires strictly after ``after`` (default now)."""
    after = after or datetime.now(timezone.utc)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    after = after.astimezone(timezone.utc).replace(microsecond=0)
    validate_cron(expression)
    return croniter(_croniter_form(expression), after).get_next(datetime)


def seconds_until_next(expression: str, after: Optional[datetime] = None) -> float:
    after = after or datetime.now(timezone.utc)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    return max((next_run(expression, after) - after).total_seconds(), 0.0)
