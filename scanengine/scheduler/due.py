"""
Due-schedule evaluation.

A schedule is due when, in its own timezone, today passes the day filter and
the current minute-of-day is 0..tolerance minutes past its time-of-day
(wrapping around midnight). A run within the cooldown blocks a second firing
from an overlapping tick.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..archivist.models import Schedule
from ..config.settings import settings

logger = logging.getLogger(__name__)

TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{2})$")
MINUTES_PER_DAY = 24 * 60


def resolve_timezone(name: Optional[str]):
    """ZoneInfo for name, or UTC when the name is missing or invalid."""
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid schedule timezone {name!r}, falling back to UTC")
        return timezone.utc


def sunday_first_weekday(moment: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


def parse_time_of_day(value: Optional[str]) -> Optional[int]:
    """'HH:MM' -> minute of day (components clamped), or None when malformed."""
    match = TIME_OF_DAY.match((value or "").strip())
    if not match:
        return None
    hours = min(23, max(0, int(match.group(1))))
    minutes = min(59, max(0, int(match.group(2))))
    return hours * 60 + minutes


def is_schedule_due(
    schedule: Schedule,
    now: Optional[datetime] = None,
    tolerance_minutes: Optional[int] = None,
    cooldown_minutes: Optional[int] = None,
) -> bool:
    if not schedule.id or not schedule.owner_id or not schedule.time_of_day:
        return False

    tolerance = settings.due_tolerance_minutes if tolerance_minutes is None else tolerance_minutes
    cooldown = settings.schedule_cooldown_minutes if cooldown_minutes is None else cooldown_minutes
    now = now or datetime.now(timezone.utc)
    local = now.astimezone(resolve_timezone(schedule.timezone))

    days = [d for d in (schedule.days or []) if isinstance(d, int) and 0 <= d <= 6]
    if days and sunday_first_weekday(local) not in days:
        return False

    target = parse_time_of_day(schedule.time_of_day)
    if target is None:
        return False

    diff = (local.hour * 60 + local.minute) - target
    if diff < -MINUTES_PER_DAY // 2:
        diff += MINUTES_PER_DAY
    elif diff > MINUTES_PER_DAY // 2:
        diff -= MINUTES_PER_DAY
    if diff < 0 or diff > tolerance:
        return False

    if schedule.last_run_at is not None:
        last_run = schedule.last_run_at
        if last_run.tzinfo is None:
            last_run = last_run.replace(tzinfo=timezone.utc)
        if now - last_run < timedelta(minutes=cooldown):
            return False

    return True


def select_due(schedules: list[Schedule], now: Optional[datetime] = None) -> list[Schedule]:
    now = now or datetime.now(timezone.utc)
    due = [s for s in schedules if is_schedule_due(s, now)]
    for schedule in due:
        logger.info(f"SCHEDULE_DUE: {schedule.id} ({schedule.label or 'unlabeled'}) at {schedule.time_of_day} {schedule.timezone}")
    return due
