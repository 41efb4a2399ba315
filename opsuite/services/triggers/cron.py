from __future__ import annotations

from datetime import datetime, timedelta
import logging

from croniter import croniter

from opsuite.core.timeutils import as_utc


logger = logging.getLogger(__name__)

# Rules that never ran look back one minute so a fresh schedule fires on its first matching minute.
_FIRST_RUN_LOOKBACK = timedelta(seconds=60)


def is_valid_cron(expression: str | None) -> bool:
    if not expression:
        return False
    try:
        return bool(croniter.is_valid(expression))
    except (TypeError, ValueError):
        return False


def next_fire_time(expression: str, base: datetime) -> datetime | None:
    # Resolve the next occurrence strictly after base, evaluated in UTC.
    try:
        return as_utc(croniter(expression, as_utc(base)).get_next(datetime))
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("cron_expression_invalid expression=%r", expression, exc_info=exc)
        return None


def is_due(expression: str | None, last_run_at: datetime | None, now: datetime) -> bool:
    # Due when the first occurrence after the last run is at or before now; bad expressions never fire.
    if not expression:
        return False
    current = as_utc(now)
    base = as_utc(last_run_at) or current - _FIRST_RUN_LOOKBACK
    upcoming = next_fire_time(expression, base)
    if upcoming is None:
        return False
    return upcoming <= current
