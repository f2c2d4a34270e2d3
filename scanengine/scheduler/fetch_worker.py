"""
Fetch worker: handles one fetch-chunk message.

Loads the job meta (missing = cancelled or finished, so the message is a
no-op), fetches the chunk's accounts under a fresh invocation budget and
writes the ChunkResult. Rewriting a chunk on redelivery is harmless.
"""

import logging

from ..common.budget import BudgetTracker
from ..config.settings import settings
from ..harvester.orchestrator import fetch_accounts
from .engine import ScanEngine
from .messages import FetchChunkMessage
from .state import ChunkResult, load_meta, save_chunk

logger = logging.getLogger(__name__)


async def handle_fetch_chunk(engine: ScanEngine, msg: FetchChunkMessage) -> None:
    prefix = f"[{msg.job_id}] chunk {msg.chunk_index}: "

    meta = await load_meta(engine.kv, msg.job_id)
    if meta is None:
        logger.info(f"{prefix}job meta missing, skipping")
        return

    budget = BudgetTracker(
        settings.fetch_worker_budget,
        used=settings.fetch_worker_budget_reserved,
        name=f"fetch-worker:{msg.job_id}:{msg.chunk_index}",
    )
    cache = engine.new_fetch_cache()
    try:
        outcome = await fetch_accounts(cache, msg.accounts, msg.days, budget, log_prefix=prefix)
    finally:
        await cache.drain()

    chunk = ChunkResult(job_id=msg.job_id, chunk_index=msg.chunk_index, **outcome.model_dump())
    await save_chunk(engine.kv, chunk)
    logger.info(
        f"{prefix}stored {chunk.total_items} items "
        f"({len(chunk.failed_accounts)} failed, {len(chunk.skipped_accounts)} skipped)"
    )
