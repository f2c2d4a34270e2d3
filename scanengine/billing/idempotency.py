"""
Idempotency guard: a unique-key insert used as a distributed lock.

The first caller to claim a key performs the side effect; every later caller
sees the conflict and skips it. Used for payment events, checkout fulfillment
(shared by the webhook and the verify endpoint) and scan completion.

Usage:
    if await guard.claim(f"fulfill:{session_id}", kind="fulfillment"):
        try:
            await ledger.add_credits(...)
        except Exception:
            await guard.release(f"fulfill:{session_id}")
            raise
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert

from ..archivist.models import BillingEvent, utc_now

logger = logging.getLogger(__name__)


class IdempotencyGuard(ABC):

    @abstractmethod
    async def claim(self, key: str, kind: str = "", data: Optional[dict[str, Any]] = None) -> bool:
        """Return True if this caller won the key, False if it was already claimed."""

    @abstractmethod
    async def release(self, key: str) -> None:
        """Reopen a key whose side effect failed, so a redelivery can retry it."""

    @abstractmethod
    async def prune(self, prefix: str, older_than: datetime) -> int:
        """Delete claims whose key starts with prefix and were made before older_than."""


class InMemoryIdempotencyGuard(IdempotencyGuard):
    def __init__(self):
        self.claims: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def claim(self, key: str, kind: str = "", data: Optional[dict[str, Any]] = None) -> bool:
        async with self._lock:
            if key in self.claims:
                return False
            self.claims[key] = {"kind": kind, "data": dict(data or {}), "created_at": utc_now()}
            return True

    async def release(self, key: str) -> None:
        async with self._lock:
            self.claims.pop(key, None)

    async def prune(self, prefix: str, older_than: datetime) -> int:
        async with self._lock:
            old = [k for k, c in self.claims.items() if k.startswith(prefix) and c["created_at"] < older_than]
            for key in old:
                del self.claims[key]
            return len(old)


class PostgresIdempotencyGuard(IdempotencyGuard):
    """Claims stored as billing_events rows (unique event_id)."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def claim(self, key: str, kind: str = "", data: Optional[dict[str, Any]] = None) -> bool:
        stmt = (
            pg_insert(BillingEvent)
            .values(event_id=key, event_type=kind, data=data or {})
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(BillingEvent.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            inserted = result.scalar_one_or_none()
            await session.commit()
        if inserted is None:
            logger.info(f"Idempotency key already claimed: {key}")
            return False
        return True

    async def release(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(BillingEvent).where(BillingEvent.event_id == key))
            await session.commit()

    async def prune(self, prefix: str, older_than: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(BillingEvent).where(
                    BillingEvent.event_id.startswith(prefix, autoescape=True),
                    BillingEvent.created_at < older_than,
                )
            )
            await session.commit()
            return result.rowcount or 0
