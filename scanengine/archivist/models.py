"""
Database models using SQLModel (SQLAlchemy + Pydantic).

Schema:
- Schedule: tenant-owned recurring scan definition
- AccountPreset: saved account group a schedule can reference
- Profile: per-tenant credit balance and subscription state
- CreditTransaction: append-only ledger rows
- BillingEvent: idempotency records for payment events and fulfillment locks
- KVEntry: TTL key-value rows (job metadata, chunk results, caches)
- QueueMessage: at-least-once message transport
- ScanRecord: persisted scan results
- AnalysisCacheEntry: per-item analysis memoization keyed by prompt hash
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, Any

from sqlalchemy import Column, DateTime, BigInteger, CheckConstraint, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import SQLModel, Field


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Schedule.last_run_status values
STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


class Schedule(SQLModel, table=True):
    """A tenant's recurring scan definition.

    `days` uses 0 = Sunday ... 6 = Saturday; an empty list means every day.
    `time_of_day` is "HH:MM" in the schedule's own IANA timezone.
    """
    __tablename__ = "schedules"
    __table_args__ = (
        Index("idx_schedules_enabled", "enabled"),
        Index("idx_schedules_status_last_run", "last_run_status", "last_run_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    owner_id: str = Field(index=True)
    label: str = Field(default="")
    time_of_day: str = Field(max_length=5)
    timezone: str = Field(default="UTC", max_length=64)
    days: list[int] = Field(default_factory=list, sa_column=Column(JSONB, nullable=False, server_default="[]"))
    range_days: int = Field(default=1)
    accounts: list[str] = Field(default_factory=list, sa_column=Column(JSONB, nullable=False, server_default="[]"))
    preset_id: Optional[str] = Field(default=None)
    prompt: Optional[str] = None
    model: Optional[str] = None
    enabled: bool = Field(default=True)

    last_run_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_run_status: str = Field(default=STATUS_IDLE)
    last_run_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))


class AccountPreset(SQLModel, table=True):
    """A saved group of accounts (watchlist) owned by a tenant."""
    __tablename__ = "account_presets"

    id: str = Field(default_factory=new_id, primary_key=True)
    owner_id: str = Field(index=True)
    name: str = Field(default="")
    accounts: list[str] = Field(default_factory=list, sa_column=Column(JSONB, nullable=False, server_default="[]"))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))


class Profile(SQLModel, table=True):
    """Per-tenant ledger head. Balance is only ever changed by conditional updates."""
    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_profiles_balance_non_negative"),
    )

    id: str = Field(primary_key=True)  # tenant id
    credits_balance: int = Field(default=0)
    subscription_status: Optional[str] = None
    stripe_customer_id: Optional[str] = Field(default=None, unique=True, index=True)
    stripe_subscription_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditTransaction(SQLModel, table=True):
    """Append-only ledger row. Summing `amount` per user reproduces the balance."""
    __tablename__ = "credit_transactions"

    id: Optional[int] = Field(default=None, sa_column=Column(BigInteger, primary_key=True, autoincrement=True))
    user_id: str = Field(index=True)
    type: str  # purchase, recurring, scan_debit, refund
    amount: int  # signed
    balance_after: int
    description: str = Field(default="")
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONB, nullable=False, server_default="{}"))
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))


class BillingEvent(SQLModel, table=True):
    """Idempotency record. The unique event_id makes the first insert win."""
    __tablename__ = "billing_events"

    id: Optional[int] = Field(default=None, sa_column=Column(BigInteger, primary_key=True, autoincrement=True))
    event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(default="")
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONB, nullable=False, server_default="{}"))
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))


class KVEntry(SQLModel, table=True):
    """TTL key-value row. Expired rows are invisible to reads and purged periodically."""
    __tablename__ = "kv_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: Any = Field(default=None, sa_column=Column(JSONB, nullable=True))
    expires_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), index=True))


class QueueMessage(SQLModel, table=True):
    """One message on the scan queue.

    A message is invisible while locked_until is in the future; a consumer that
    dies mid-handler lets the lock lapse and the message is redelivered.
    """
    __tablename__ = "queue_messages"
    __table_args__ = (
        Index("idx_queue_messages_ready", "queue_name", "available_at"),
    )

    id: Optional[int] = Field(default=None, sa_column=Column(BigInteger, primary_key=True, autoincrement=True))
    queue_name: str = Field(max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONB, nullable=False))
    available_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))
    locked_until: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    deliveries: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))


class ScanRecord(SQLModel, table=True):
    """A persisted scan result."""
    __tablename__ = "scans"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    schedule_id: Optional[str] = Field(default=None, index=True)
    accounts: list[str] = Field(default_factory=list, sa_column=Column(JSONB, nullable=False, server_default="[]"))
    range_days: int = Field(default=1)
    range_label: str = Field(default="")
    total_items: int = Field(default=0)
    signal_count: int = Field(default=0)
    signals: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSONB, nullable=False, server_default="[]"))
    item_meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONB, nullable=False, server_default="{}"))
    credits_charged: int = Field(default=0)
    free_tier: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False, index=True))


class AnalysisCacheEntry(SQLModel, table=True):
    """Cross-tenant memo of analysis output for one item under one prompt hash."""
    __tablename__ = "analysis_cache"
    __table_args__ = (
        UniqueConstraint("prompt_hash", "item_key", name="uq_analysis_cache_prompt_item"),
    )

    id: Optional[int] = Field(default=None, sa_column=Column(BigInteger, primary_key=True, autoincrement=True))
    prompt_hash: str = Field(max_length=64, index=True)
    item_key: str = Field(max_length=2048)
    signals: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSONB, nullable=False, server_default="[]"))
    model: str = Field(default="")
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
