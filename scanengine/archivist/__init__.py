"""Database models and storage backends."""

from .models import (
    Schedule,
    AccountPreset,
    Profile,
    CreditTransaction,
    BillingEvent,
    KVEntry,
    QueueMessage,
    ScanRecord,
    AnalysisCacheEntry,
)
from .kv_store import KVStore, InMemoryKVStore, PostgresKVStore
from .queue_store import MessageQueue, InMemoryMessageQueue, PostgresMessageQueue
from .schedule_store import ScheduleStore, InMemoryScheduleStore, PostgresScheduleStore
from .ledger_store import LedgerStore, InMemoryLedgerStore, PostgresLedgerStore
from .storage import (
    ScanStore,
    InMemoryScanStore,
    PostgresScanStore,
    AnalysisCache,
    InMemoryAnalysisCache,
    PostgresAnalysisCache,
)

__all__ = [
    "Schedule",
    "AccountPreset",
    "Profile",
    "CreditTransaction",
    "BillingEvent",
    "KVEntry",
    "QueueMessage",
    "ScanRecord",
    "AnalysisCacheEntry",
    "KVStore",
    "InMemoryKVStore",
    "PostgresKVStore",
    "MessageQueue",
    "InMemoryMessageQueue",
    "PostgresMessageQueue",
    "ScheduleStore",
    "InMemoryScheduleStore",
    "PostgresScheduleStore",
    "LedgerStore",
    "InMemoryLedgerStore",
    "PostgresLedgerStore",
    "ScanStore",
    "InMemoryScanStore",
    "PostgresScanStore",
    "AnalysisCache",
    "InMemoryAnalysisCache",
    "PostgresAnalysisCache",
]
