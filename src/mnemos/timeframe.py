"""Named timeframes resolved to half-open [after, before) ranges on local naive time."""

from datetime import datetime, timedelta
from typing import Optional, Tuple

TIMEFRAMES = ("today", "yesterday", "this_week", "last_week", "this_month", "last_month")


def _month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month(value: datetime) -> datetime:
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1)
    return value.replace(month=value.month + 1)


def _previous_month(value: datetime) -> datetime:
    if value.month == 1:
        return value.replace(year=value.year - 1, month=12)
    return value.replace(month=value.month - 1)


def resolve_time_range(token: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Resolve a timeframe token.

    Weeks start on Monday. "this_*" ranges end at the start of the next
    period, not at now.

    Raises:
        ValueError: If the token is not one of TIMEFRAMES
    """
    now = now or datetime.now()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if token == "today":
        return midnight, midnight + timedelta(days=1)
    if token == "yesterday":
        return midnight - timedelta(days=1), midnight
    if token in ("this_week", "last_week"):
        week_start = midnight - timedelta(days=midnight.weekday())
        if token == "this_week":
            return week_start, week_start + timedelta(days=7)
        return week_start - timedelta(days=7), week_start
    if token == "this_month":
        start = _month_start(now)
        return start, _next_month(start)
    if token == "last_month":
        start = _month_start(now)
        return _previous_month(start), start
    raise ValueError(f"Unknown timeframe: {token}. Must be one of: {TIMEFRAMES}")
