"""
End-to-end tests of the queued scan: dispatch -> fetch workers -> convergence
poller -> completion, all on the in-memory backends.
"""

import pytest


async def _drain(engine, max_polls: int = 20) -> None:
    from scanengine.scheduler.consumer import QueueConsumer, build_router

    consumer = QueueConsumer(engine.queue, build_router(engine))
    for _ in range(max_polls):
        engine.queue.make_all_visible()
        if not await consumer.poll_once():
            return


async def _save_job(engine, total_chunks: int, schedule_id=None, job_id: str = "job-1"):
    from scanengine.scheduler.state import ScanJobMeta, save_meta

    meta = ScanJobMeta(
        job_id=job_id,
        total_chunks=total_chunks,
        schedule_id=schedule_id,
        owner_id="user-1",
        accounts=["alpha", "beta"],
        days=1,
        model="claude-sonnet-4-20250514",
        prompt="find trades",
        prompt_hash="hash-1",
        credits_needed=2,
    )
    await save_meta(engine.kv, meta)
    return meta


async def _save_chunk(engine, job_id: str, index: int, accounts: dict):
    from conftest import make_item
    from scanengine.harvester.schemas import AccountContent, FetchOutcome
    from scanengine.scheduler.state import ChunkResult, save_chunk

    contents = [
        AccountContent(account=a, items=[make_item(a, item_id) for item_id in ids])
        for a, ids in accounts.items()
    ]
    outcome = FetchOutcome.from_accounts(contents)
    await save_chunk(engine.kv, ChunkResult(job_id=job_id, chunk_index=index, **outcome.model_dump()))


class TestQueuedScan:

    @pytest.mark.asyncio
    async def test_full_run_persists_charges_and_cleans_up(self, engine, add_profile, add_schedule):
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan

        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=[f"acct{i}" for i in range(75)])

        job_id = await dispatch_scheduled_scan(engine, schedule)
        await _drain(engine)

        assert schedule.last_run_status == "success"
        assert schedule.last_run_message == "75 signals from 75 items"
        assert len(engine.scans.scans) == 1
        scan = engine.scans.scans[0]
        assert scan.signal_count == 75
        assert scan.schedule_id == schedule.id
        assert all(s.get("tweet_time") for s in scan.signals)

        profile = await engine.ledger_store.get_profile("user-1")
        assert profile.credits_balance == 25
        transactions = await engine.ledger_store.list_transactions("user-1")
        assert sum(t.amount for t in transactions) == profile.credits_balance

        assert not [k for k in engine.kv.keys() if k.startswith(f"scan:{job_id}:")]
        assert engine.queue.pending() == 0

    @pytest.mark.asyncio
    async def test_unreachable_accounts_reported_in_status(self, engine, add_profile, add_schedule, content_client):
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan

        content_client.failing.add("beta")
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha", "beta", "gamma"])

        await dispatch_scheduled_scan(engine, schedule)
        await _drain(engine)

        assert schedule.last_run_status == "success"
        assert schedule.last_run_message == "2 signals from 2 items (1 unreachable)"

    @pytest.mark.asyncio
    async def test_all_accounts_failing_sets_no_items_error(self, engine, add_profile, add_schedule, content_client):
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan

        content_client.failing.update({"alpha", "beta"})
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha", "beta"])

        await dispatch_scheduled_scan(engine, schedule)
        await _drain(engine)

        assert schedule.last_run_status == "error"
        assert schedule.last_run_message == "No items (2/2 accounts failed)"
        assert engine.scans.scans == []

    @pytest.mark.asyncio
    async def test_empty_window_message(self, engine, add_profile, add_schedule, content_client):
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan

        content_client.items = {"alpha": [], "beta": []}
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha", "beta"], range_days=7)

        await dispatch_scheduled_scan(engine, schedule)
        await _drain(engine)

        assert schedule.last_run_message == "No items found for 2 accounts in the last 7 days"

    @pytest.mark.asyncio
    async def test_rejected_analysis_hides_provider_text(self, engine, add_profile, add_schedule, analyzer):
        from scanengine.common.errors import AnalysisAbortedError
        from scanengine.scheduler.completion import ANALYSIS_REJECTED_MESSAGE
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan

        analyzer.fail_when = "alpha"
        analyzer.error = AnalysisAbortedError("401 invalid x-api-key sk-secret")
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha"])

        await dispatch_scheduled_scan(engine, schedule)
        await _drain(engine)

        assert schedule.last_run_status == "error"
        assert schedule.last_run_message == ANALYSIS_REJECTED_MESSAGE

    @pytest.mark.asyncio
    async def test_every_batch_failing_sets_analysis_error(self, engine, add_profile, add_schedule, analyzer):
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan

        analyzer.fail_when = "==="
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha", "beta"])

        await dispatch_scheduled_scan(engine, schedule)
        await _drain(engine)

        assert schedule.last_run_status == "error"
        assert schedule.last_run_message == "Analysis failed (1/1 batches failed)"
        profile = await engine.ledger_store.get_profile("user-1")
        assert profile.credits_balance == 100


class TestConvergencePoller:
    """Tests for handle_analyze_message."""

    @pytest.mark.asyncio
    async def test_requeues_while_chunks_missing(self, engine):
        from scanengine.config.settings import settings
        from scanengine.scheduler.messages import AnalyzeMessage
        from scanengine.scheduler.poller import handle_analyze_message

        await _save_job(engine, total_chunks=2)
        await _save_chunk(engine, "job-1", 0, {"alpha": ["a1"]})

        assert await handle_analyze_message(engine, AnalyzeMessage(job_id="job-1", attempt=1)) is None

        assert len(engine.queue.sent) == 1
        assert engine.queue.sent[0].payload == {"type": "analyze", "job_id": "job-1", "attempt": 2}
        assert engine.queue.sent[0].delay_seconds == settings.convergence_poll_delay

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, engine, add_schedule):
        from scanengine.config.settings import settings
        from scanengine.scheduler.messages import AnalyzeMessage
        from scanengine.scheduler.poller import handle_analyze_message
        from scanengine.scheduler.state import load_meta

        schedule = add_schedule(last_run_status="running")
        await _save_job(engine, total_chunks=2, schedule_id=schedule.id)
        await _save_chunk(engine, "job-1", 0, {"alpha": ["a1"]})

        message = AnalyzeMessage(job_id="job-1", attempt=settings.convergence_max_attempts)
        assert await handle_analyze_message(engine, message) is False

        assert engine.queue.sent == []
        assert schedule.last_run_status == "error"
        assert schedule.last_run_message == "Timed out waiting for content fetching (1/2 chunks)"
        assert await load_meta(engine.kv, "job-1") is None

    @pytest.mark.asyncio
    async def test_missing_meta_is_noop(self, engine):
        from scanengine.scheduler.messages import AnalyzeMessage
        from scanengine.scheduler.poller import handle_analyze_message

        assert await handle_analyze_message(engine, AnalyzeMessage(job_id="gone")) is None
        assert engine.queue.sent == []

    @pytest.mark.asyncio
    async def test_duplicate_completion_is_noop(self, engine, add_profile):
        from scanengine.scheduler.messages import AnalyzeMessage
        from scanengine.scheduler.poller import completion_key, handle_analyze_message
        from scanengine.scheduler.state import load_meta

        await add_profile("user-1", credits=10)
        await _save_job(engine, total_chunks=1)
        await _save_chunk(engine, "job-1", 0, {"alpha": ["a1"], "beta": ["b1"]})
        assert await engine.idempotency.claim(completion_key("job-1"))

        assert await handle_analyze_message(engine, AnalyzeMessage(job_id="job-1")) is None

        assert engine.scans.scans == []
        assert await load_meta(engine.kv, "job-1") is not None
        profile = await engine.ledger_store.get_profile("user-1")
        assert profile.credits_balance == 10

    @pytest.mark.asyncio
    async def test_completes_once_with_deduped_items(self, engine, add_profile):
        from scanengine.scheduler.messages import AnalyzeMessage
        from scanengine.scheduler.poller import handle_analyze_message

        await add_profile("user-1", credits=10)
        await _save_job(engine, total_chunks=2)
        await _save_chunk(engine, "job-1", 0, {"alpha": ["a1", "a1", "a2"]})
        await _save_chunk(engine, "job-1", 1, {"beta": ["b1"]})

        assert await handle_analyze_message(engine, AnalyzeMessage(job_id="job-1")) is True
        assert await handle_analyze_message(engine, AnalyzeMessage(job_id="job-1")) is None

        assert len(engine.scans.scans) == 1
        assert engine.scans.scans[0].total_items == 3
        profile = await engine.ledger_store.get_profile("user-1")
        assert profile.credits_balance == 8


class TestMergeChunks:

    def test_merges_repeated_accounts_and_dedupes(self):
        from conftest import make_item
        from scanengine.harvester.schemas import AccountContent
        from scanengine.scheduler.poller import merge_chunks
        from scanengine.scheduler.state import ChunkResult

        first = ChunkResult(job_id="j", chunk_index=0, accounts=[
            AccountContent(account="alpha", items=[make_item("alpha", "1")]),
            AccountContent(account="beta", error="timeout"),
        ])
        second = ChunkResult(job_id="j", chunk_index=1, accounts=[
            AccountContent(account="alpha", items=[make_item("alpha", "1"), make_item("alpha", "2")]),
        ])

        outcome = merge_chunks([second, first])

        assert [c.account for c in outcome.accounts] == ["alpha", "beta"]
        assert [i["id"] for i in outcome.accounts[0].items] == ["1", "2"]
        assert outcome.failed_accounts == ["beta"]
        assert outcome.total_items == 2
