"""
Inline fallback: the whole scan in one invocation.

Used when the queue is disabled. One budget covers fetching and analysis, so
accounts that do not fit are skipped and reported in the status message. An
overall deadline bounds the run; when it expires the schedule is force-marked
error with retried status writes.
"""

import asyncio
import logging

from ..archivist.models import STATUS_ERROR, Schedule, new_id
from ..common.budget import BudgetTracker
from ..config.settings import settings
from ..harvester.orchestrator import fetch_accounts
from .completion import complete_from_cache, finalize_scan
from .dispatcher import ScanNotRunnable, prepare_scan
from .engine import ScanEngine
from .scan_cache import read_scan_cache
from .status import mark_running, set_schedule_status, status_update_policy

logger = logging.getLogger(__name__)

DEADLINE_MESSAGE = "Scan exceeded time limit, will retry at next scheduled time"
INLINE_FAILED_MESSAGE = "Scan failed, will retry at next scheduled time"


async def _run_inline(engine: ScanEngine, schedule: Schedule, job_id: str) -> bool:
    prefix = f"[{job_id}] "
    budget = BudgetTracker(settings.inline_budget, used=settings.inline_budget_reserved, name=f"inline:{job_id}")

    try:
        prepared = await prepare_scan(engine, schedule)
    except ScanNotRunnable as e:
        logger.info(f"{prefix}Schedule {schedule.id} not run: {e}")
        await set_schedule_status(engine.schedules, schedule.id, STATUS_ERROR, str(e))
        return False

    meta = prepared.to_meta(job_id, total_chunks=1)

    cached = await read_scan_cache(engine.kv, prepared.accounts, prepared.days, prepared.prompt_hash, budget=budget)
    if cached is not None:
        await complete_from_cache(engine, meta, cached)
        return True

    cache = engine.new_fetch_cache()
    try:
        outcome = await fetch_accounts(cache, prepared.accounts, prepared.days, budget, log_prefix=prefix)
    finally:
        await cache.drain()

    return await finalize_scan(engine, meta, outcome, budget=budget)


async def run_scheduled_scan_inline(engine: ScanEngine, schedule: Schedule) -> bool:
    """Run one schedule end to end. Never raises; returns True on success."""
    job_id = new_id()
    await mark_running(engine.schedules, schedule.id)

    try:
        return await asyncio.wait_for(
            _run_inline(engine, schedule, job_id),
            timeout=settings.inline_scan_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            f"[{job_id}] Inline scan for schedule {schedule.id} exceeded "
            f"{settings.inline_scan_timeout_seconds}s deadline"
        )
        message = DEADLINE_MESSAGE
    except Exception as e:
        logger.error(f"[{job_id}] Inline scan for schedule {schedule.id} failed: {e}", exc_info=True)
        message = INLINE_FAILED_MESSAGE

    await set_schedule_status(
        engine.schedules,
        schedule.id,
        STATUS_ERROR,
        message,
        policy=status_update_policy(settings.status_update_attempts),
    )
    return False
