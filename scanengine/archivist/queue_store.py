"""
At-least-once message transport for scan work.

Messages become visible at `available_at` (delayed sends), are locked for a
visibility timeout while a consumer handles them, and are deleted on ack. A
consumer that crashes simply lets the lock lapse, so the message is delivered
again; handlers must be idempotent.

Implementations:
- InMemoryMessageQueue: process-local, records every send for inspection
- PostgresMessageQueue: `queue_messages` table with FOR UPDATE SKIP LOCKED
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import delete, or_, select, update

from .models import QueueMessage, utc_now

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "scan-jobs"

# Largest batch a single send_batch call accepts
MAX_BATCH_SIZE = 100


@dataclass
class ReceivedMessage:
    """A message handed to a consumer."""
    id: int
    payload: dict[str, Any]
    deliveries: int


class MessageQueue(ABC):
    """Abstract at-least-once queue."""

    max_batch_size: int = MAX_BATCH_SIZE

    @abstractmethod
    async def send(self, payload: dict[str, Any], delay_seconds: int = 0) -> None:
        """Enqueue one message, visible after delay_seconds."""

    @abstractmethod
    async def send_batch(self, payloads: list[dict[str, Any]], delay_seconds: int = 0) -> None:
        """Enqueue up to max_batch_size messages in one call."""

    @abstractmethod
    async def receive(self, max_messages: int, visibility_timeout: int) -> list[ReceivedMessage]:
        """Lock and return up to max_messages ready messages."""

    @abstractmethod
    async def ack(self, message_id: int) -> None:
        """Delete a handled message."""

    @abstractmethod
    async def retry(self, message_id: int, delay_seconds: int) -> None:
        """Unlock a message and make it visible again after delay_seconds."""

    def _check_batch(self, payloads: list[dict[str, Any]]) -> None:
        if len(payloads) > self.max_batch_size:
            raise ValueError(f"Batch of {len(payloads)} exceeds max batch size {self.max_batch_size}")


@dataclass
class _MemoryEntry:
    id: int
    payload: str
    available_at: float
    locked_until: Optional[float] = None
    deliveries: int = 0


@dataclass
class SentRecord:
    """A send as seen by the in-memory queue (for inspection in tests and local runs)."""
    payload: dict[str, Any]
    delay_seconds: int


class InMemoryMessageQueue(MessageQueue):
    """Process-local queue with delay and visibility semantics."""

    def __init__(self):
        self._entries: dict[int, _MemoryEntry] = {}
        self._next_id = 1
        self.sent: list[SentRecord] = []
        self.batch_calls = 0

    async def send(self, payload: dict[str, Any], delay_seconds: int = 0) -> None:
        self._enqueue(payload, delay_seconds)

    async def send_batch(self, payloads: list[dict[str, Any]], delay_seconds: int = 0) -> None:
        self._check_batch(payloads)
        self.batch_calls += 1
        for payload in payloads:
            self._enqueue(payload, delay_seconds)

    def _enqueue(self, payload: dict[str, Any], delay_seconds: int) -> None:
        entry = _MemoryEntry(
            id=self._next_id,
            payload=json.dumps(payload),
            available_at=time.time() + delay_seconds,
        )
        self._entries[entry.id] = entry
        self._next_id += 1
        self.sent.append(SentRecord(payload=json.loads(entry.payload), delay_seconds=delay_seconds))

    async def receive(self, max_messages: int, visibility_timeout: int) -> list[ReceivedMessage]:
        now = time.time()
        ready = [
            e for e in sorted(self._entries.values(), key=lambda e: (e.available_at, e.id))
            if e.available_at <= now and (e.locked_until is None or e.locked_until <= now)
        ][:max_messages]
        received = []
        for entry in ready:
            entry.locked_until = now + visibility_timeout
            entry.deliveries += 1
            received.append(ReceivedMessage(entry.id, json.loads(entry.payload), entry.deliveries))
        return received

    async def ack(self, message_id: int) -> None:
        self._entries.pop(message_id, None)

    async def retry(self, message_id: int, delay_seconds: int) -> None:
        entry = self._entries.get(message_id)
        if entry is None:
            return
        entry.locked_until = None
        entry.available_at = time.time() + delay_seconds

    def pending(self) -> int:
        return len(self._entries)

    def make_all_visible(self) -> None:
        """Collapse every delay so the next receive() sees all messages."""
        for entry in self._entries.values():
            entry.available_at = 0.0
            entry.locked_until = None


class PostgresMessageQueue(MessageQueue):
    """Queue backed by the queue_messages table."""

    def __init__(self, session_factory, queue_name: str = DEFAULT_QUEUE):
        self._session_factory = session_factory
        self.queue_name = queue_name

    async def send(self, payload: dict[str, Any], delay_seconds: int = 0) -> None:
        await self.send_batch([payload], delay_seconds=delay_seconds)

    async def send_batch(self, payloads: list[dict[str, Any]], delay_seconds: int = 0) -> None:
        self._check_batch(payloads)
        if not payloads:
            return
        available_at = utc_now() + timedelta(seconds=delay_seconds)
        async with self._session_factory() as session:
            session.add_all([
                QueueMessage(queue_name=self.queue_name, payload=p, available_at=available_at)
                for p in payloads
            ])
            await session.commit()

    async def receive(self, max_messages: int, visibility_timeout: int) -> list[ReceivedMessage]:
        now = utc_now()
        ready_ids = (
            select(QueueMessage.id)
            .where(
                QueueMessage.queue_name == self.queue_name,
                QueueMessage.available_at <= now,
                or_(QueueMessage.locked_until.is_(None), QueueMessage.locked_until <= now),
            )
            .order_by(QueueMessage.available_at, QueueMessage.id)
            .limit(max_messages)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(QueueMessage)
            .where(QueueMessage.id.in_(ready_ids))
            .values(
                locked_until=now + timedelta(seconds=visibility_timeout),
                deliveries=QueueMessage.deliveries + 1,
            )
            .returning(QueueMessage.id, QueueMessage.payload, QueueMessage.deliveries)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.fetchall()
            await session.commit()

        messages = []
        for row in rows:
            payload = row[1]
            if isinstance(payload, str):
                payload = json.loads(payload)
            messages.append(ReceivedMessage(id=row[0], payload=payload, deliveries=row[2]))
        return messages

    async def ack(self, message_id: int) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(QueueMessage).where(QueueMessage.id == message_id))
            await session.commit()

    async def retry(self, message_id: int, delay_seconds: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(QueueMessage)
                .where(QueueMessage.id == message_id)
                .values(locked_until=None, available_at=utc_now() + timedelta(seconds=delay_seconds))
            )
            await session.commit()
