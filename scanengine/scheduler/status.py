"""Schedule status transitions written by the scan stages."""

import logging
from typing import Optional

from ..archivist.models import STATUS_RUNNING, utc_now
from ..archivist.schedule_store import ScheduleStore
from ..common.retry import RetryPolicy
from ..config.settings import settings

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 250


def status_update_policy(attempts: Optional[int] = None) -> RetryPolicy:
    """Any failure is retried, waiting 1s, 2s, ... between attempts."""
    return RetryPolicy(
        max_attempts=attempts or settings.status_update_attempts,
        backoff=lambda attempt, error: 1.0 * (attempt + 1),
        retryable=lambda error: True,
    )


async def mark_running(schedules: ScheduleStore, schedule_id: str) -> None:
    """Claim the schedule for this run; a concurrent tick then sees a fresh last_run_at."""
    await schedules.patch(
        schedule_id,
        last_run_status=STATUS_RUNNING,
        last_run_at=utc_now(),
        last_run_message=None,
    )


async def set_schedule_status(
    schedules: ScheduleStore,
    schedule_id: Optional[str],
    status: str,
    message: str,
    policy: Optional[RetryPolicy] = None,
) -> bool:
    """Record a terminal status. Returns False (after logging) when every attempt failed."""
    if not schedule_id:
        return True
    policy = policy or status_update_policy()
    try:
        await policy.run(
            lambda: schedules.patch(schedule_id, last_run_status=status, last_run_message=message[:MESSAGE_LIMIT]),
            description=f"status update {schedule_id} -> {status}",
        )
    except Exception as e:
        logger.error(f"Could not set schedule {schedule_id} to {status}: {e}")
        return False
    return True
