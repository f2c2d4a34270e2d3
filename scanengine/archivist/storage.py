"""
Scan result storage and the per-item analysis cache.

- ScanStore: persisted ScanRecord rows plus the free-tier usage query
- AnalysisCache: (prompt_hash, item_key) -> signals memo shared across tenants,
  written best-effort after successful analyses and read before new ones
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from .models import AnalysisCacheEntry, ScanRecord, utc_now

logger = logging.getLogger(__name__)

# Max item keys per lookup query
CACHE_LOOKUP_BATCH = 100


class ScanStore(ABC):
    """Abstract persisted-scan storage."""

    @abstractmethod
    async def save(self, scan: ScanRecord) -> ScanRecord:
        """Persist a scan. Raises on failure; callers own the billing consequences."""

    @abstractmethod
    async def count_free_scans_since(self, user_id: str, since: datetime) -> int:
        """Number of free-tier scans the user saved at or after `since`."""


class InMemoryScanStore(ScanStore):
    def __init__(self):
        self.scans: list[ScanRecord] = []

    async def save(self, scan: ScanRecord) -> ScanRecord:
        self.scans.append(scan)
        return scan

    async def count_free_scans_since(self, user_id: str, since: datetime) -> int:
        return sum(1 for s in self.scans if s.user_id == user_id and s.free_tier and s.created_at >= since)


class PostgresScanStore(ScanStore):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def save(self, scan: ScanRecord) -> ScanRecord:
        async with self._session_factory() as session:
            session.add(scan)
            await session.commit()
            return scan

    async def count_free_scans_since(self, user_id: str, since: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(ScanRecord)
                .where(
                    ScanRecord.user_id == user_id,
                    ScanRecord.free_tier.is_(True),
                    ScanRecord.created_at >= since,
                )
            )
            return int(result.scalar() or 0)


class AnalysisCache(ABC):
    """Abstract per-item analysis memo."""

    @abstractmethod
    async def get_many(self, prompt_hash: str, item_keys: list[str]) -> dict[str, list[dict[str, Any]]]:
        """Cached signals for the keys that hit. Missing keys are absent from the result."""

    @abstractmethod
    async def put_many(self, prompt_hash: str, entries: dict[str, list[dict[str, Any]]], model: str, ttl_days: int) -> None:
        """Insert or replace entries."""


class InMemoryAnalysisCache(AnalysisCache):
    def __init__(self):
        self._entries: dict[tuple[str, str], tuple[datetime, list[dict[str, Any]]]] = {}

    async def get_many(self, prompt_hash: str, item_keys: list[str]) -> dict[str, list[dict[str, Any]]]:
        now = utc_now()
        hits = {}
        for key in item_keys:
            entry = self._entries.get((prompt_hash, key))
            if entry is not None and entry[0] > now:
                hits[key] = [dict(s) for s in entry[1]]
        return hits

    async def put_many(self, prompt_hash: str, entries: dict[str, list[dict[str, Any]]], model: str, ttl_days: int) -> None:
        expires_at = utc_now() + timedelta(days=ttl_days)
        for key, signals in entries.items():
            self._entries[(prompt_hash, key)] = (expires_at, [dict(s) for s in signals])


class PostgresAnalysisCache(AnalysisCache):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get_many(self, prompt_hash: str, item_keys: list[str]) -> dict[str, list[dict[str, Any]]]:
        hits: dict[str, list[dict[str, Any]]] = {}
        now = utc_now()
        async with self._session_factory() as session:
            for i in range(0, len(item_keys), CACHE_LOOKUP_BATCH):
                batch = item_keys[i:i + CACHE_LOOKUP_BATCH]
                result = await session.execute(
                    select(AnalysisCacheEntry.item_key, AnalysisCacheEntry.signals).where(
                        AnalysisCacheEntry.prompt_hash == prompt_hash,
                        AnalysisCacheEntry.item_key.in_(batch),
                        AnalysisCacheEntry.expires_at > now,
                    )
                )
                for item_key, signals in result.fetchall():
                    hits[item_key] = signals or []
        return hits

    async def put_many(self, prompt_hash: str, entries: dict[str, list[dict[str, Any]]], model: str, ttl_days: int) -> None:
        if not entries:
            return
        expires_at = utc_now() + timedelta(days=ttl_days)
        rows = [
            {
                "prompt_hash": prompt_hash,
                "item_key": key,
                "signals": signals,
                "model": model,
                "expires_at": expires_at,
            }
            for key, signals in entries.items()
        ]
        stmt = pg_insert(AnalysisCacheEntry).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["prompt_hash", "item_key"],
            set_={
                "signals": stmt.excluded.signals,
                "model": stmt.excluded.model,
                "expires_at": stmt.excluded.expires_at,
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()


def resolve_range_label(days: int) -> str:
    if days <= 1:
        return "Today"
    if days <= 7:
        return "Week"
    return "Month"


def build_scan_record(
    user_id: str,
    accounts: list[str],
    days: int,
    signals: list[dict[str, Any]],
    total_items: int,
    credits_charged: int,
    free_tier: bool = False,
    schedule_id: Optional[str] = None,
    label: Optional[str] = None,
    item_meta: Optional[dict[str, Any]] = None,
) -> ScanRecord:
    """Assemble a ScanRecord with a human-readable range label."""
    range_label = resolve_range_label(days)
    if label:
        range_label = f"{range_label} (scheduled: {label})"
    return ScanRecord(
        user_id=user_id,
        schedule_id=schedule_id,
        accounts=list(accounts),
        range_days=days,
        range_label=range_label,
        total_items=total_items,
        signal_count=len(signals),
        signals=signals,
        item_meta=item_meta or {},
        credits_charged=credits_charged,
        free_tier=free_tier,
    )
