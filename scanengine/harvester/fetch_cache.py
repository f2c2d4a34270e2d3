"""
Content fetch cache and request coalescer.

Cache key: tweets:{account}:{days}:{bucket}, bucket = floor(now / bucket_hours).

Lookup order for fetch(account, days):
1. Fresh bucket hit -> return it.
2. Previous bucket hit -> return it now and refresh the current bucket in the
   background (tracked task, awaited by drain()).
3. An identical fetch already in flight in this instance -> await it.
4. Otherwise fetch upstream, register it as in flight, and cache a non-empty
   result for bucket_hours.

Scope: the in-flight map belongs to one ContentFetchCache instance, which is
created per invocation. It collapses concurrent duplicates inside that
invocation only; separate invocations or processes are deduplicated solely
through the shared KV cache.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from ..archivist.kv_store import KVStore
from ..common.budget import BudgetTracker
from ..config.settings import settings
from .content_client import ContentClient

logger = logging.getLogger(__name__)

# Cache reads (fresh + stale) and one cache write around the upstream call
CACHE_OPS_PER_FETCH = 3


class ContentFetchCache:
    """Stale-while-revalidate cache with in-flight coalescing for one invocation."""

    def __init__(
        self,
        kv: KVStore,
        client: ContentClient,
        bucket_hours: Optional[int] = None,
        inflight_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.client = client
        self.bucket_hours = bucket_hours or settings.content_cache_bucket_hours
        self.inflight_timeout = inflight_timeout or settings.inflight_safety_timeout
        self._clock = clock
        self._inflight: dict[str, asyncio.Future] = {}
        self._refreshing: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self.upstream_calls = 0

    @property
    def ttl_seconds(self) -> int:
        return self.bucket_hours * 3600

    def current_bucket(self) -> int:
        return int(self._clock() // self.ttl_seconds)

    @staticmethod
    def cache_key(account: str, days: int, bucket: int) -> str:
        return f"tweets:{account.lower()}:{days}:{bucket}"

    def worst_case_cost(self) -> int:
        """Budget units one fetch() can spend, including a background refresh."""
        return CACHE_OPS_PER_FETCH + self.client.worst_case_cost()

    async def fetch(self, account: str, days: int, budget: Optional[BudgetTracker] = None) -> list[dict[str, Any]]:
        bucket = self.current_bucket()
        fresh_key = self.cache_key(account, days, bucket)
        stale_key = self.cache_key(account, days, bucket - 1)

        cached = await self._read(fresh_key, budget)
        if cached is not None:
            return cached

        stale = await self._read(stale_key, budget)
        if stale is not None:
            self._schedule_refresh(account, days, fresh_key, budget)
            return stale

        return await self._fetch_coalesced(account, days, fresh_key, budget)

    async def drain(self) -> None:
        """Wait for background refreshes started by this instance."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _read(self, key: str, budget: Optional[BudgetTracker]) -> Optional[list[dict[str, Any]]]:
        if budget is not None:
            if not budget.can_afford(1):
                return None
            budget.consume(1)
        try:
            value = await self.kv.get(key)
        except Exception as e:
            logger.warning(f"Content cache read failed for {key}: {e}")
            return None
        return value if isinstance(value, list) else None

    async def _write(self, key: str, items: list[dict[str, Any]], budget: Optional[BudgetTracker]) -> None:
        if budget is not None:
            if not budget.can_afford(1):
                logger.debug(f"Content cache write skipped for {key}: budget exhausted")
                return
            budget.consume(1)
        try:
            await self.kv.put(key, items, ttl_seconds=self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Content cache write failed for {key}: {e}")

    async def _fetch_coalesced(self, account: str, days: int, key: str, budget: Optional[BudgetTracker]) -> list[dict[str, Any]]:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug(f"Coalesced fetch for {key}")
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(self._fetch_and_store(account, days, key, budget))
        self._inflight[key] = task
        safety = asyncio.get_running_loop().call_later(self.inflight_timeout, self._evict, key, task)
        try:
            return await asyncio.shield(task)
        finally:
            safety.cancel()
            if self._inflight.get(key) is task:
                del self._inflight[key]

    def _evict(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
            logger.warning(f"INFLIGHT_EVICTED: {key} still running after {self.inflight_timeout}s")

    async def _fetch_and_store(self, account: str, days: int, key: str, budget: Optional[BudgetTracker]) -> list[dict[str, Any]]:
        self.upstream_calls += 1
        items = await self.client.fetch_recent(account, days, budget=budget)
        if items:
            await self._write(key, items, budget)
        return items

    def _schedule_refresh(self, account: str, days: int, key: str, budget: Optional[BudgetTracker]) -> None:
        if key in self._inflight or key in self._refreshing:
            return

        refresh_budget = None
        if budget is not None:
            refresh_budget = budget.allocate(self.client.worst_case_cost() + 1, name=f"refresh:{account}")
            if refresh_budget is None:
                logger.debug(f"Background refresh for {key} skipped: budget exhausted")
                return

        self._refreshing.add(key)
        task = asyncio.ensure_future(self._refresh(account, days, key, refresh_budget))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self, account: str, days: int, key: str, budget: Optional[BudgetTracker]) -> None:
        try:
            await self._fetch_coalesced(account, days, key, budget)
        except Exception as e:
            logger.warning(f"Background refresh failed for @{account}: {e}")
        finally:
            self._refreshing.discard(key)
            if budget is not None:
                budget.release()
