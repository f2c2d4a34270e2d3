"""
Stale-run cleanup for schedules.

A crashed invocation (OOM kill, deploy restart, lost queue message) leaves a
schedule in `running` forever. Each tick resets runs that started more than
stale_running_minutes ago. The reset is a conditional update on
status = running AND last_run_at < threshold, so a run that completes
concurrently keeps its own status.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..archivist.schedule_store import ScheduleStore
from ..config.settings import settings

logger = logging.getLogger(__name__)

STALE_RUN_MESSAGE = "Scan timed out, will retry at next scheduled time"


async def reset_stale_running_schedules(
    schedules: ScheduleStore,
    now: Optional[datetime] = None,
    threshold_minutes: Optional[int] = None,
) -> list[str]:
    now = now or datetime.now(timezone.utc)
    threshold = now - timedelta(minutes=threshold_minutes or settings.stale_running_minutes)
    reset = await schedules.reset_stale_running(threshold, STALE_RUN_MESSAGE)
    for schedule_id in reset:
        logger.warning(f"STALE_SCHEDULE_RESET: {schedule_id} was running since before {threshold.isoformat()}")
    return reset
