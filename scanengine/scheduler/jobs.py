"""
APScheduler job definitions for scheduled scans.

Three interval jobs run in-process:
- tick: reset stale runs, select due schedules, dispatch each one (queue
  fan-out, or the inline fallback when the queue is disabled)
- consumer: drain the scan queue (fetch workers and the convergence poller)
- maintenance: purge expired KV entries and old scan completion claims

All use max_instances=1 so a slow run is never overlapped by the next one.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from .consumer import QueueConsumer, build_router
from .dispatcher import dispatch_scheduled_scan
from .due import select_due
from .engine import ScanEngine
from .inline import run_scheduled_scan_inline
from .poller import COMPLETION_PREFIX
from .stuck_monitor import reset_stale_running_schedules

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None


async def run_due_scheduled_scans(engine: ScanEngine, now: Optional[datetime] = None) -> dict[str, Any]:
    """One tick of the due-job selector. A failing schedule never blocks the others."""
    now = now or datetime.now(timezone.utc)
    summary = {"reset": 0, "due": 0, "dispatched": 0, "failed": 0}

    try:
        summary["reset"] = len(await reset_stale_running_schedules(engine.schedules, now=now))
    except Exception as e:
        logger.error(f"Stale schedule reset failed: {e}")

    schedules = await engine.schedules.list_enabled()
    due = select_due(schedules, now)
    summary["due"] = len(due)

    for schedule in due:
        try:
            if settings.queue_enabled:
                await dispatch_scheduled_scan(engine, schedule)
            else:
                await run_scheduled_scan_inline(engine, schedule)
            summary["dispatched"] += 1
        except Exception as e:
            summary["failed"] += 1
            logger.error(f"Schedule {schedule.id} failed at dispatch: {e}", exc_info=True)

    logger.info(
        f"Scheduler tick: {len(schedules)} enabled, {summary['due']} due, "
        f"{summary['dispatched']} dispatched, {summary['failed']} failed, {summary['reset']} stale reset"
    )
    return summary


async def scheduled_tick_job(engine: ScanEngine):
    try:
        await run_due_scheduled_scans(engine)
    except Exception as e:
        logger.error(f"Scheduler tick failed: {e}", exc_info=True)


async def consume_queue_job(consumer: QueueConsumer):
    """Drain every ready message, one receive batch at a time."""
    try:
        while await consumer.poll_once():
            pass
    except Exception as e:
        logger.error(f"Queue consumer failed: {e}", exc_info=True)


async def run_maintenance(engine: ScanEngine, now: Optional[datetime] = None) -> dict[str, int]:
    """Purge expired KV entries and old scan completion claims."""
    now = now or datetime.now(timezone.utc)
    summary = {"kv_expired": 0, "claims_pruned": 0}

    try:
        summary["kv_expired"] = await engine.kv.purge_expired()
    except Exception as e:
        logger.error(f"KV purge failed: {e}")

    cutoff = now - timedelta(hours=settings.completion_claim_retention_hours)
    try:
        summary["claims_pruned"] = await engine.idempotency.prune(COMPLETION_PREFIX, older_than=cutoff)
    except Exception as e:
        logger.error(f"Completion claim prune failed: {e}")

    logger.info(f"Maintenance: {summary['kv_expired']} expired KV entries, {summary['claims_pruned']} claims pruned")
    return summary


async def maintenance_job(engine: ScanEngine):
    try:
        await run_maintenance(engine)
    except Exception as e:
        logger.error(f"Maintenance failed: {e}", exc_info=True)


def setup_scheduler(engine: ScanEngine) -> AsyncIOScheduler:
    """Initialize and start the APScheduler with the tick, maintenance and consumer jobs."""
    global scheduler

    scheduler = AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,  # A missed tick is replaced by the next one
            "max_instances": 1,
            "misfire_grace_time": 30,
        },
    )

    scheduler.add_job(
        scheduled_tick_job,
        trigger=IntervalTrigger(seconds=settings.scheduler_tick_seconds),
        args=[engine],
        id="scheduled_scan_tick",
        name="Scheduled scan tick",
        replace_existing=True,
    )

    scheduler.add_job(
        maintenance_job,
        trigger=IntervalTrigger(seconds=settings.maintenance_interval_seconds),
        args=[engine],
        id="scan_state_maintenance",
        name="Scan state maintenance",
        replace_existing=True,
    )

    if settings.queue_enabled:
        consumer = QueueConsumer(engine.queue, build_router(engine))
        scheduler.add_job(
            consume_queue_job,
            trigger=IntervalTrigger(seconds=settings.queue_poll_interval_seconds),
            args=[consumer],
            id="scan_queue_consumer",
            name="Scan queue consumer",
            replace_existing=True,
        )

    scheduler.start()
    logger.info(
        f"Scheduler started: tick every {settings.scheduler_tick_seconds}s, "
        f"queue {'enabled' if settings.queue_enabled else 'disabled (inline scans)'}"
    )
    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.id} - next run: {job.next_run_time}")

    return scheduler


def shutdown_scheduler():
    """Shutdown the scheduler without waiting for running jobs."""
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete")
        scheduler = None
