"""
Wiring of stores and provider clients used by every scan stage.

build_engine() picks the storage backend from settings:
- "postgres": SQLAlchemy async stores on the shared session factory
- "memory": process-local stores (local runs and tests)
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..analyst.extractor import AnalysisClient
from ..archivist.kv_store import InMemoryKVStore, KVStore, PostgresKVStore
from ..archivist.ledger_store import InMemoryLedgerStore, LedgerStore, PostgresLedgerStore
from ..archivist.queue_store import InMemoryMessageQueue, MessageQueue, PostgresMessageQueue
from ..archivist.schedule_store import InMemoryScheduleStore, PostgresScheduleStore, ScheduleStore
from ..archivist.storage import (
    AnalysisCache,
    InMemoryAnalysisCache,
    InMemoryScanStore,
    PostgresAnalysisCache,
    PostgresScanStore,
    ScanStore,
)
from ..billing.idempotency import IdempotencyGuard, InMemoryIdempotencyGuard, PostgresIdempotencyGuard
from ..billing.ledger import CreditLedger
from ..billing.payment_client import PaymentClient
from ..config.settings import settings
from ..harvester.content_client import ContentClient
from ..harvester.fetch_cache import ContentFetchCache

logger = logging.getLogger(__name__)


@dataclass
class ScanEngine:
    kv: KVStore
    queue: MessageQueue
    schedules: ScheduleStore
    ledger_store: LedgerStore
    scans: ScanStore
    analysis_cache: AnalysisCache
    idempotency: IdempotencyGuard
    content_client: ContentClient = field(default_factory=ContentClient)
    analyzer: AnalysisClient = field(default_factory=AnalysisClient)
    payments: PaymentClient = field(default_factory=PaymentClient)
    ledger: CreditLedger = field(init=False)

    def __post_init__(self):
        self.ledger = CreditLedger(self.ledger_store, self.scans)

    def new_fetch_cache(self) -> ContentFetchCache:
        """A fresh cache/coalescer for one invocation (its in-flight map is not shared)."""
        return ContentFetchCache(self.kv, self.content_client)

    async def close(self):
        await self.content_client.close()
        await self.analyzer.close()
        await self.payments.close()


def build_memory_engine(**overrides) -> ScanEngine:
    parts = dict(
        kv=InMemoryKVStore(),
        queue=InMemoryMessageQueue(),
        schedules=InMemoryScheduleStore(),
        ledger_store=InMemoryLedgerStore(),
        scans=InMemoryScanStore(),
        analysis_cache=InMemoryAnalysisCache(),
        idempotency=InMemoryIdempotencyGuard(),
    )
    parts.update(overrides)
    return ScanEngine(**parts)


def build_engine(backend: Optional[str] = None) -> ScanEngine:
    backend = backend or settings.storage_backend
    if backend == "memory":
        logger.info("Using in-memory storage backend")
        return build_memory_engine()
    if backend != "postgres":
        raise ValueError(f"Unknown storage backend: {backend}")

    from ..archivist.database import async_session_factory

    return ScanEngine(
        kv=PostgresKVStore(async_session_factory),
        queue=PostgresMessageQueue(async_session_factory),
        schedules=PostgresScheduleStore(async_session_factory),
        ledger_store=PostgresLedgerStore(async_session_factory),
        scans=PostgresScanStore(async_session_factory),
        analysis_cache=PostgresAnalysisCache(async_session_factory),
        idempotency=PostgresIdempotencyGuard(async_session_factory),
    )
