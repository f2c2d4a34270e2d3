"""
Tests for the scheduler tick and APScheduler wiring.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

# Monday 09:01 UTC
TICK_TIME = datetime(2026, 1, 5, 9, 1, tzinfo=timezone.utc)


class TestRunDueScheduledScans:
    """Tests for run_due_scheduled_scans."""

    @pytest.mark.asyncio
    async def test_due_schedule_is_dispatched_to_queue(self, engine, add_profile, add_schedule):
        from scanengine.scheduler.jobs import run_due_scheduled_scans

        await add_profile("user-1", credits=100)
        due = add_schedule(accounts=["alpha", "beta"])
        later = add_schedule(accounts=["gamma"], time_of_day="15:00")
        disabled = add_schedule(accounts=["delta"], enabled=False)

        summary = await run_due_scheduled_scans(engine, now=TICK_TIME)

        assert summary == {"reset": 0, "due": 1, "dispatched": 1, "failed": 0}
        assert due.last_run_status == "running"
        assert later.last_run_status == "idle"
        assert disabled.last_run_status == "idle"
        assert [s.payload["type"] for s in engine.queue.sent] == ["fetch-chunk", "analyze"]

    @pytest.mark.asyncio
    async def test_inline_fallback_when_queue_disabled(self, engine, add_profile, add_schedule, monkeypatch):
        from scanengine.config.settings import settings
        from scanengine.scheduler.jobs import run_due_scheduled_scans

        monkeypatch.setattr(settings, "queue_enabled", False)
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha", "beta"])

        summary = await run_due_scheduled_scans(engine, now=TICK_TIME)

        assert summary["dispatched"] == 1
        assert engine.queue.sent == []
        assert schedule.last_run_status == "success"
        assert schedule.last_run_message == "2 signals from 2 items"

    @pytest.mark.asyncio
    async def test_second_tick_inside_tolerance_does_not_dispatch_again(
        self, engine, add_profile, add_schedule, monkeypatch
    ):
        from scanengine.scheduler import status
        from scanengine.scheduler.jobs import run_due_scheduled_scans

        monkeypatch.setattr(status, "utc_now", lambda: TICK_TIME)
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha", "beta"])

        first = await run_due_scheduled_scans(engine, now=TICK_TIME)
        sent_after_first = len(engine.queue.sent)
        second = await run_due_scheduled_scans(engine, now=TICK_TIME + timedelta(minutes=1))

        assert first["dispatched"] == 1
        assert second == {"reset": 0, "due": 0, "dispatched": 0, "failed": 0}
        assert len(engine.queue.sent) == sent_after_first
        assert schedule.last_run_status == "running"

    @pytest.mark.asyncio
    async def test_second_tick_after_inline_completion_does_not_rerun(
        self, engine, add_profile, add_schedule, monkeypatch
    ):
        from scanengine.config.settings import settings
        from scanengine.scheduler import status
        from scanengine.scheduler.jobs import run_due_scheduled_scans

        monkeypatch.setattr(status, "utc_now", lambda: TICK_TIME)
        monkeypatch.setattr(settings, "queue_enabled", False)
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha"])

        await run_due_scheduled_scans(engine, now=TICK_TIME)
        second = await run_due_scheduled_scans(engine, now=TICK_TIME + timedelta(minutes=1))

        assert second["dispatched"] == 0
        assert schedule.last_run_status == "success"
        assert len(engine.scans.scans) == 1

    @pytest.mark.asyncio
    async def test_stale_runs_are_reset_before_selection(self, engine, add_schedule):
        from scanengine.scheduler.jobs import run_due_scheduled_scans

        stuck = add_schedule(
            time_of_day="03:00",
            last_run_status="running",
            last_run_at=TICK_TIME - timedelta(minutes=30),
        )

        summary = await run_due_scheduled_scans(engine, now=TICK_TIME)

        assert summary["reset"] == 1
        assert stuck.last_run_status == "error"

    @pytest.mark.asyncio
    async def test_one_failing_schedule_does_not_block_others(self, engine, add_schedule, monkeypatch):
        from scanengine.scheduler import jobs

        first = add_schedule(accounts=["alpha"])
        second = add_schedule(accounts=["beta"])
        dispatch = AsyncMock(side_effect=[RuntimeError("boom"), "job-2"])
        monkeypatch.setattr(jobs, "dispatch_scheduled_scan", dispatch)

        summary = await jobs.run_due_scheduled_scans(engine, now=TICK_TIME)

        assert summary["due"] == 2
        assert summary["failed"] == 1
        assert summary["dispatched"] == 1
        assert [call.args[1].id for call in dispatch.await_args_list] == [first.id, second.id]


class TestSchedulerSetup:

    @pytest.mark.asyncio
    async def test_registers_tick_and_consumer_jobs(self, engine):
        from scanengine.scheduler import jobs

        scheduler = jobs.setup_scheduler(engine)
        try:
            assert {job.id for job in scheduler.get_jobs()} == {
                "scheduled_scan_tick", "scan_state_maintenance", "scan_queue_consumer"
            }
            assert jobs.scheduler is scheduler
        finally:
            jobs.shutdown_scheduler()
        assert jobs.scheduler is None

    @pytest.mark.asyncio
    async def test_consumer_job_drains_queue(self, engine, add_profile, add_schedule):
        from scanengine.scheduler.consumer import QueueConsumer, build_router
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan
        from scanengine.scheduler.jobs import consume_queue_job

        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha"])
        await dispatch_scheduled_scan(engine, schedule)
        engine.queue.make_all_visible()

        await consume_queue_job(QueueConsumer(engine.queue, build_router(engine)))

        assert engine.queue.pending() == 0
        assert schedule.last_run_status == "success"
        assert len(engine.scans.scans) == 1


class TestMaintenance:
    """Tests for run_maintenance."""

    @pytest.mark.asyncio
    async def test_purges_expired_state_and_old_completion_claims(self, engine, monkeypatch):
        from scanengine.archivist import kv_store
        from scanengine.scheduler.jobs import run_maintenance

        await engine.kv.put("scan:old:meta", {"job_id": "old"}, ttl_seconds=60)
        await engine.kv.put("content:alpha:1:10", [{"id": "1"}], ttl_seconds=3600)
        await engine.idempotency.claim("scan-complete:old", kind="scan-complete")
        await engine.idempotency.claim("fulfill:cs_1", kind="checkout.fulfillment")

        later = kv_store.time.time() + 120
        monkeypatch.setattr(kv_store.time, "time", lambda: later)
        summary = await run_maintenance(engine, now=datetime.now(timezone.utc) + timedelta(hours=25))

        assert summary == {"kv_expired": 1, "claims_pruned": 1}
        assert engine.kv.keys() == ["content:alpha:1:10"]
        assert list(engine.idempotency.claims) == ["fulfill:cs_1"]

    @pytest.mark.asyncio
    async def test_recent_claims_are_kept(self, engine):
        from scanengine.scheduler.jobs import run_maintenance

        await engine.idempotency.claim("scan-complete:fresh", kind="scan-complete")

        summary = await run_maintenance(engine)

        assert summary["claims_pruned"] == 0
        assert "scan-complete:fresh" in engine.idempotency.claims

    @pytest.mark.asyncio
    async def test_purge_failure_does_not_stop_claim_pruning(self, engine):
        from scanengine.scheduler.jobs import run_maintenance

        engine.kv.purge_expired = AsyncMock(side_effect=RuntimeError("db down"))
        await engine.idempotency.claim("scan-complete:old", kind="scan-complete")

        summary = await run_maintenance(engine, now=datetime.now(timezone.utc) + timedelta(hours=25))

        assert summary == {"kv_expired": 0, "claims_pruned": 1}
