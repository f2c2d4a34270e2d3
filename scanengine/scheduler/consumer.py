"""
Queue consumer: receive -> parse -> route -> ack.

- Invalid payloads are dropped (acked) with an error log; redelivering them
  can never succeed.
- Handler failures are retried with exponential backoff until the message has
  been delivered queue_max_deliveries times, then dead-lettered (logged
  critical and acked).
"""

import logging
from typing import Optional

from pydantic import ValidationError

from ..archivist.queue_store import MessageQueue, ReceivedMessage
from ..config.settings import settings
from .engine import ScanEngine
from .fetch_worker import handle_fetch_chunk
from .messages import AnalyzeMessage, FetchChunkMessage, MessageRouter, parse_message
from .poller import handle_analyze_message

logger = logging.getLogger(__name__)


def build_router(engine: ScanEngine) -> MessageRouter:
    router = MessageRouter()

    async def on_fetch_chunk(msg: FetchChunkMessage) -> None:
        await handle_fetch_chunk(engine, msg)

    async def on_analyze(msg: AnalyzeMessage) -> None:
        await handle_analyze_message(engine, msg)

    router.register(FetchChunkMessage, on_fetch_chunk)
    router.register(AnalyzeMessage, on_analyze)
    return router


def retry_delay(deliveries: int) -> int:
    return int(settings.queue_retry_backoff_base * (2 ** max(0, deliveries - 1)))


class QueueConsumer:
    """Drains the scan queue through a MessageRouter."""

    def __init__(self, queue: MessageQueue, router: MessageRouter, max_deliveries: Optional[int] = None):
        self.queue = queue
        self.router = router
        self.max_deliveries = max_deliveries or settings.queue_max_deliveries

    async def poll_once(self) -> int:
        """Handle one receive batch. Returns the number of messages received."""
        received = await self.queue.receive(settings.queue_receive_batch, settings.queue_visibility_timeout)
        for message in received:
            await self._handle(message)
        return len(received)

    async def _handle(self, received: ReceivedMessage) -> None:
        try:
            message = parse_message(received.payload)
        except ValidationError as e:
            logger.error(f"Dropping invalid queue message {received.id}: {e.error_count()} validation errors")
            await self.queue.ack(received.id)
            return

        try:
            await self.router.dispatch(message)
        except Exception as e:
            if received.deliveries >= self.max_deliveries:
                logger.critical(
                    f"QUEUE_DEAD_LETTER: {message.type} message {received.id} "
                    f"failed {received.deliveries} times: {e}",
                    exc_info=True,
                )
                await self.queue.ack(received.id)
                return
            delay = retry_delay(received.deliveries)
            logger.warning(
                f"{message.type} message {received.id} failed (delivery {received.deliveries}), "
                f"retrying in {delay}s: {e}"
            )
            await self.queue.retry(received.id, delay)
            return

        await self.queue.ack(received.id)
