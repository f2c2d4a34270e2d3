"""
TTL key-value store.

Holds transient scan state (job metadata, chunk results) and the shared
content / scan caches. Two implementations:
- InMemoryKVStore: process-local, for local runs and tests
- PostgresKVStore: `kv_entries` table, shared across invocations

Values are JSON documents; both implementations hand back copies so callers
never share mutable state through the store.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from .models import KVEntry, utc_now

logger = logging.getLogger(__name__)


def _copy_json(value: Any) -> Any:
    return json.loads(json.dumps(value))


class KVStore(ABC):
    """Abstract TTL key-value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the value for key, or None when missing or expired."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""

    async def delete_many(self, keys: list[str]) -> int:
        """Best-effort delete. Returns the number of keys whose delete raised."""
        results = await asyncio.gather(*(self.delete(k) for k in keys), return_exceptions=True)
        failures = [r for r in results if isinstance(r, Exception)]
        for failure in failures:
            logger.warning(f"KV delete failed: {failure}")
        return len(failures)


class InMemoryKVStore(KVStore):
    """Process-local KV store with lazy expiry."""

    # Sweep expired entries every N puts to bound memory
    CLEANUP_INTERVAL = 100

    def __init__(self):
        self._data: dict[str, tuple[Optional[float], str]] = {}
        self._puts_since_cleanup = 0

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at is not None and time.time() >= expires_at:
            del self._data[key]
            return None
        return json.loads(raw)

    async def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        self._data[key] = (expires_at, json.dumps(value))

        self._puts_since_cleanup += 1
        if self._puts_since_cleanup >= self.CLEANUP_INTERVAL:
            self._cleanup()
            self._puts_since_cleanup = 0

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def purge_expired(self) -> int:
        return self._cleanup()

    def _cleanup(self) -> int:
        now = time.time()
        expired = [k for k, (exp, _) in self._data.items() if exp is not None and now >= exp]
        for k in expired:
            del self._data[k]
        if expired:
            logger.debug(f"KV cleanup: removed {len(expired)} expired entries, size={len(self._data)}")
        return len(expired)

    def keys(self) -> list[str]:
        return list(self._data.keys())


class PostgresKVStore(KVStore):
    """KV store backed by the kv_entries table."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[Any]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KVEntry.value).where(
                    KVEntry.key == key,
                    or_(KVEntry.expires_at.is_(None), KVEntry.expires_at > utc_now()),
                )
            )
            value = result.scalar_one_or_none()
            return _copy_json(value) if value is not None else None

    async def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = utc_now() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        stmt = pg_insert(KVEntry).values(key=key, value=value, expires_at=expires_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value, "expires_at": stmt.excluded.expires_at},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(KVEntry).where(KVEntry.key == key))
            await session.commit()

    async def purge_expired(self) -> int:
        """Delete expired rows. Returns the number removed."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(KVEntry).where(KVEntry.expires_at.is_not(None), KVEntry.expires_at <= utc_now())
            )
            await session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info(f"KV purge: removed {removed} expired entries")
        return removed
