"""Cron schedule evaluation for automatic payouts"""

from datetime import datetime
from typing import Optional

from croniter import croniter


def is_valid_cron(expression: str) -> bool:
    return bool(expression) and croniter.is_valid(expression)


def next_run_after(expression: str, after: datetime) -> datetime:
    """Next fire time strictly after `after`"""
    return croniter(expression, after).get_next(datetime)


def is_due(
    expression: str,
    is_enabled: bool,
    last_run_at: Optional[datetime],
    anchor: datetime,
    now: datetime,
) -> bool:
    """
    Whether a scheduled run should start now.

    The next fire time is computed from the last completed run, or from the
    anchor (when the schedule was last changed) if it never ran.
    """
    if not is_enabled or not is_valid_cron(expression):
        return False
    base = last_run_at or anchor
    return next_run_after(expression, base) <= now
