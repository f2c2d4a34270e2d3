"""
Tests for the chunk dispatcher: account resolution, chunking and fan-out.
"""

import pytest


def _accounts(count: int) -> list[str]:
    return [f"acct{i}" for i in range(count)]


class TestNormalizeAccounts:

    def test_strips_lowercases_and_dedupes(self):
        from scanengine.scheduler.dispatcher import normalize_accounts

        result = normalize_accounts(["@Alpha", " beta ", "alpha", "bad handle!", "", "gamma_1"])

        assert result == ["alpha", "beta", "gamma_1"]

    def test_caps_at_limit(self):
        from scanengine.scheduler.dispatcher import normalize_accounts

        assert normalize_accounts(_accounts(10), limit=4) == _accounts(4)


class TestChunking:

    def test_chunking_is_lossless_and_ordered(self):
        from scanengine.scheduler.dispatcher import chunk_accounts

        accounts = _accounts(75)
        chunks = chunk_accounts(accounts, 30)

        assert [len(c) for c in chunks] == [30, 30, 15]
        assert [a for chunk in chunks for a in chunk] == accounts

    def test_analyze_delay_bounds(self):
        from scanengine.scheduler.dispatcher import analyze_delay

        assert analyze_delay(1) == 20
        assert analyze_delay(3) == 30
        assert analyze_delay(50) == 90

    def test_prompt_hash_depends_on_model_and_prompt(self):
        from scanengine.scheduler.dispatcher import compute_prompt_hash

        base = compute_prompt_hash("claude-sonnet", "find trades")
        assert len(base) == 16
        assert base == compute_prompt_hash("claude-sonnet", "find trades")
        assert base != compute_prompt_hash("claude-opus", "find trades")
        assert base != compute_prompt_hash("claude-sonnet", "find tools")


class TestResolveAccounts:

    @pytest.mark.asyncio
    async def test_falls_back_to_preset_then_recent_presets(self, engine, add_schedule):
        from scanengine.archivist.models import AccountPreset
        from scanengine.scheduler.dispatcher import resolve_accounts

        engine.schedules.add_preset(AccountPreset(id="p1", owner_id="user-1", accounts=["@one", "two"]))
        engine.schedules.add_preset(AccountPreset(id="p2", owner_id="user-1", accounts=["three"]))
        engine.schedules.add_preset(AccountPreset(id="p3", owner_id="someone-else", accounts=["four"]))

        with_preset = add_schedule(preset_id="p1")
        accounts, source = await resolve_accounts(engine.schedules, with_preset)
        assert (accounts, source) == (["one", "two"], "preset")

        foreign_preset = add_schedule(preset_id="p3")
        accounts, source = await resolve_accounts(engine.schedules, foreign_preset)
        assert source == "recent_presets"
        assert sorted(accounts) == ["one", "three", "two"]

        own_list = add_schedule(accounts=["Zeta"], preset_id="p1")
        assert await resolve_accounts(engine.schedules, own_list) == (["zeta"], "schedule")


class TestDispatchScheduledScan:
    """Tests for dispatch_scheduled_scan."""

    @pytest.mark.asyncio
    async def test_fans_out_chunks_then_delayed_analyze(self, engine, add_profile, add_schedule):
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan
        from scanengine.scheduler.state import load_meta

        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=_accounts(75))

        job_id = await dispatch_scheduled_scan(engine, schedule)

        assert job_id is not None
        sent = engine.queue.sent
        fetches = [s for s in sent if s.payload["type"] == "fetch-chunk"]
        analyzes = [s for s in sent if s.payload["type"] == "analyze"]

        assert len(fetches) == 3
        assert [f.payload["chunk_index"] for f in fetches] == [0, 1, 2]
        assert [len(f.payload["accounts"]) for f in fetches] == [30, 30, 15]
        assert len(analyzes) == 1
        assert analyzes[0].delay_seconds == 30
        assert analyzes[0].payload == {"type": "analyze", "job_id": job_id, "attempt": 1}
        assert sent[-1].payload["type"] == "analyze"

        meta = await load_meta(engine.kv, job_id)
        assert meta.total_chunks == 3
        assert meta.credits_needed == 75
        assert meta.schedule_id == schedule.id
        assert schedule.last_run_status == "running"
        assert schedule.last_run_at is not None

    @pytest.mark.asyncio
    async def test_large_fanout_respects_batch_size(self, engine, add_profile, add_schedule, monkeypatch):
        from scanengine.config.settings import settings
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan

        monkeypatch.setattr(settings, "queue_chunk_size", 1)
        monkeypatch.setattr(settings, "queue_send_batch_size", 10)
        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=_accounts(25))

        await dispatch_scheduled_scan(engine, schedule)

        assert engine.queue.batch_calls == 3
        assert sum(1 for s in engine.queue.sent if s.payload["type"] == "fetch-chunk") == 25

    @pytest.mark.asyncio
    async def test_no_accounts_sets_error(self, engine, add_profile, add_schedule):
        from scanengine.scheduler.dispatcher import NO_ACCOUNTS_MESSAGE, dispatch_scheduled_scan

        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=[])

        assert await dispatch_scheduled_scan(engine, schedule) is None
        assert schedule.last_run_status == "error"
        assert schedule.last_run_message == NO_ACCOUNTS_MESSAGE
        assert engine.queue.sent == []

    @pytest.mark.asyncio
    async def test_insufficient_credits_sets_error_with_amounts(self, engine, add_profile, add_schedule):
        from scanengine.scheduler.dispatcher import dispatch_scheduled_scan

        await add_profile("user-1", credits=40)
        schedule = add_schedule(accounts=_accounts(50))

        assert await dispatch_scheduled_scan(engine, schedule) is None
        assert schedule.last_run_status == "error"
        assert schedule.last_run_message == "Insufficient credits (need 50, have 40)"
        assert engine.queue.sent == []

    @pytest.mark.asyncio
    async def test_scan_cache_hit_completes_without_queue(self, engine, add_profile, add_schedule):
        from scanengine.config.settings import settings
        from scanengine.scheduler.dispatcher import compute_prompt_hash, dispatch_scheduled_scan
        from scanengine.analyst.extractor import DEFAULT_PROMPT
        from scanengine.scheduler.scan_cache import write_scan_cache

        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha", "beta"])
        prompt_hash = compute_prompt_hash(settings.default_model, DEFAULT_PROMPT)
        signals = [{"title": "A", "tweet_url": "u1"}, {"title": "B", "tweet_url": "u2"}]
        await write_scan_cache(engine.kv, ["beta", "alpha"], 1, prompt_hash, signals, total_items=7)

        assert await dispatch_scheduled_scan(engine, schedule) is None

        assert engine.queue.sent == []
        assert schedule.last_run_status == "success"
        assert schedule.last_run_message == "2 signals (cached)"
        assert len(engine.scans.scans) == 1
        profile = await engine.ledger_store.get_profile("user-1")
        assert profile.credits_balance == 98

    @pytest.mark.asyncio
    async def test_unexpected_failure_sets_generic_error(self, engine, add_profile, add_schedule):
        from unittest.mock import AsyncMock

        from scanengine.scheduler.dispatcher import DISPATCH_FAILED_MESSAGE, dispatch_scheduled_scan

        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha"])
        engine.queue.send_batch = AsyncMock(side_effect=RuntimeError("queue unavailable"))

        assert await dispatch_scheduled_scan(engine, schedule) is None
        assert schedule.last_run_status == "error"
        assert schedule.last_run_message == DISPATCH_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_failed_analyze_send_cancels_job(self, engine, add_profile, add_schedule, content_client):
        from unittest.mock import AsyncMock

        from scanengine.scheduler.consumer import QueueConsumer, build_router
        from scanengine.scheduler.dispatcher import DISPATCH_FAILED_MESSAGE, dispatch_scheduled_scan

        await add_profile("user-1", credits=100)
        schedule = add_schedule(accounts=["alpha", "beta"])
        engine.queue.send = AsyncMock(side_effect=RuntimeError("queue unavailable"))

        assert await dispatch_scheduled_scan(engine, schedule) is None

        assert schedule.last_run_message == DISPATCH_FAILED_MESSAGE
        assert engine.kv.keys() == []

        # The fetch-chunk that made it onto the queue finds no job and does nothing
        assert engine.queue.pending() == 1
        engine.queue.make_all_visible()
        await QueueConsumer(engine.queue, build_router(engine)).poll_once()
        assert engine.queue.pending() == 0
        assert content_client.calls == []
        assert engine.kv.keys() == []
