"""
Tests for shared building blocks: budgets, retry policies, the KV store,
the message queue and the idempotency guard.
"""

from unittest.mock import AsyncMock

import httpx
import pytest


class TestBudgetTracker:

    def test_allocate_and_release_return_unspent_units(self):
        from scanengine.common.budget import BudgetTracker

        budget = BudgetTracker(limit=10, used=2)
        child = budget.allocate(6)
        assert budget.used == 8

        child.consume(2)
        child.release()
        child.release()

        assert budget.used == 4
        assert budget.remaining == 6

    def test_allocation_that_does_not_fit(self):
        from scanengine.common.budget import BudgetTracker

        budget = BudgetTracker(limit=5, used=3)

        assert budget.allocate(3) is None
        assert budget.used == 3
        assert budget.can_afford(2) is True

    def test_negative_limit_rejected(self):
        from scanengine.common.budget import BudgetTracker

        with pytest.raises(ValueError):
            BudgetTracker(limit=-1)


class TestRetryPolicy:
    """Tests for RetryPolicy.run."""

    def _policy(self, max_attempts=3):
        from scanengine.common.retry import RetryPolicy, fixed_backoff

        return RetryPolicy(max_attempts=max_attempts, backoff=fixed_backoff(0.5), sleep=AsyncMock())

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        from scanengine.common.errors import UpstreamTransientError

        policy = self._policy()
        operation = AsyncMock(side_effect=[UpstreamTransientError("503"), UpstreamTransientError("503"), "ok"])

        assert await policy.run(operation) == "ok"
        assert operation.await_count == 3
        assert policy.sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self):
        from scanengine.common.errors import UpstreamPermanentError

        policy = self._policy()
        operation = AsyncMock(side_effect=UpstreamPermanentError("400"))

        with pytest.raises(UpstreamPermanentError):
            await policy.run(operation)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_each_attempt_costs_budget(self):
        from scanengine.common.budget import BudgetTracker
        from scanengine.common.errors import BudgetExhaustedError, UpstreamTransientError

        policy = self._policy(max_attempts=5)
        operation = AsyncMock(side_effect=UpstreamTransientError("timeout"))
        budget = BudgetTracker(limit=2)

        with pytest.raises(BudgetExhaustedError):
            await policy.run(operation, budget=budget)
        assert operation.await_count == 2
        assert budget.used == 2

    def test_retry_after_overrides_backoff(self):
        from scanengine.common.errors import RateLimitedError, UpstreamTransientError
        from scanengine.common.retry import RetryPolicy, exponential_backoff, fixed_backoff

        policy = RetryPolicy(
            max_attempts=3,
            backoff=fixed_backoff(2.0),
            backoff_overrides=[(RateLimitedError, exponential_backoff(base=1.0, cap=15.0, jitter=False))],
        )

        assert policy.delay_for(0, UpstreamTransientError("503")) == 2.0
        assert policy.delay_for(3, RateLimitedError("429")) == 8.0
        assert policy.delay_for(5, RateLimitedError("429")) == 15.0
        assert policy.delay_for(0, RateLimitedError("429", retry_after=7)) == 7


class TestInMemoryKVStore:

    @pytest.mark.asyncio
    async def test_values_are_copies_and_expire(self, monkeypatch):
        from scanengine.archivist import kv_store
        from scanengine.archivist.kv_store import InMemoryKVStore

        kv = InMemoryKVStore()
        value = {"items": [1, 2]}
        await kv.put("k", value, ttl_seconds=10)
        value["items"].append(3)

        assert await kv.get("k") == {"items": [1, 2]}

        now = kv_store.time.time()
        monkeypatch.setattr(kv_store.time, "time", lambda: now + 11)
        assert await kv.get("k") is None
        assert await kv.exists("k") is False

    @pytest.mark.asyncio
    async def test_delete_many_reports_failures(self):
        from scanengine.archivist.kv_store import InMemoryKVStore

        kv = InMemoryKVStore()
        await kv.put("a", 1)
        await kv.put("b", 2)

        assert await kv.delete_many(["a", "b", "missing"]) == 0
        assert kv.keys() == []

        kv.delete = AsyncMock(side_effect=[None, RuntimeError("down")])
        assert await kv.delete_many(["x", "y"]) == 1


class TestInMemoryMessageQueue:

    @pytest.mark.asyncio
    async def test_delay_and_visibility(self):
        from scanengine.archivist.queue_store import InMemoryMessageQueue

        queue = InMemoryMessageQueue()
        await queue.send({"n": 1})
        await queue.send({"n": 2}, delay_seconds=60)

        first = await queue.receive(10, visibility_timeout=30)
        assert [m.payload for m in first] == [{"n": 1}]
        assert first[0].deliveries == 1

        # Locked while in flight, delayed message not yet visible
        assert await queue.receive(10, visibility_timeout=30) == []

        await queue.retry(first[0].id, delay_seconds=0)
        again = await queue.receive(10, visibility_timeout=30)
        assert again[0].deliveries == 2

    @pytest.mark.asyncio
    async def test_batch_size_limit(self):
        from scanengine.archivist.queue_store import InMemoryMessageQueue

        queue = InMemoryMessageQueue()
        with pytest.raises(ValueError):
            await queue.send_batch([{"n": i} for i in range(queue.max_batch_size + 1)])


class TestIdempotencyGuard:

    @pytest.mark.asyncio
    async def test_first_claim_wins_until_released(self):
        import asyncio

        from scanengine.billing.idempotency import InMemoryIdempotencyGuard

        guard = InMemoryIdempotencyGuard()
        results = await asyncio.gather(*[guard.claim("fulfill:cs_1") for _ in range(5)])
        assert results.count(True) == 1

        await guard.release("fulfill:cs_1")
        assert await guard.claim("fulfill:cs_1") is True


class TestProviderClient:

    @pytest.mark.asyncio
    async def test_default_headers(self):
        from scanengine.common.http_client import USER_AGENT, create_provider_client

        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, json={})

        client = create_provider_client(
            base_url="https://provider.test",
            timeout=5,
            extra_headers={"X-API-Key": "k"},
            transport=httpx.MockTransport(handler),
        )
        async with client:
            await client.get("/ping")

        assert seen["user-agent"] == USER_AGENT
        assert seen["x-api-key"] == "k"
