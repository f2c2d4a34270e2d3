"""
Convergence poller: handles analyze messages.

Each delivery checks the chunk keys of one job. While chunks are missing the
message is re-sent with attempt + 1; once every chunk has landed, the merged
content goes through completion exactly once (guarded by a
`scan-complete:{job_id}` claim, since the queue delivers at least once).
"""

import logging
from typing import Optional

from ..archivist.models import STATUS_ERROR
from ..common.budget import BudgetTracker
from ..config.settings import settings
from ..harvester.orchestrator import dedupe_items
from ..harvester.schemas import AccountContent, FetchOutcome
from .completion import finalize_scan
from .engine import ScanEngine
from .messages import AnalyzeMessage
from .state import ChunkResult, chunk_key, cleanup_job, load_chunk, load_meta
from .status import set_schedule_status

logger = logging.getLogger(__name__)

SAVE_FAILED_MESSAGE = "Failed to save scan results"


COMPLETION_PREFIX = "scan-complete:"


def completion_key(job_id: str) -> str:
    return f"{COMPLETION_PREFIX}{job_id}"


async def count_ready_chunks(engine: ScanEngine, job_id: str, total_chunks: int) -> int:
    ready = 0
    for i in range(total_chunks):
        if await engine.kv.exists(chunk_key(job_id, i)):
            ready += 1
    return ready


def merge_chunks(chunks: list[ChunkResult]) -> FetchOutcome:
    """Combine chunk results in chunk order, merging repeated accounts and deduping their items."""
    merged: dict[str, AccountContent] = {}
    for chunk in sorted(chunks, key=lambda c: c.chunk_index):
        for content in chunk.accounts:
            existing = merged.get(content.account)
            if existing is None:
                merged[content.account] = content.model_copy(deep=True)
                continue
            existing.items = existing.items + content.items
            if existing.items:
                existing.error = None
            existing.skipped = existing.skipped and content.skipped
    for content in merged.values():
        content.items = dedupe_items(content.items)
    return FetchOutcome.from_accounts(list(merged.values()))


async def handle_analyze_message(engine: ScanEngine, msg: AnalyzeMessage) -> Optional[bool]:
    """
    Returns None while still waiting (or when the job is gone / already
    completed), otherwise the completion result.
    """
    prefix = f"[{msg.job_id}] "

    meta = await load_meta(engine.kv, msg.job_id)
    if meta is None:
        logger.info(f"{prefix}job meta missing, nothing to analyze")
        return None

    ready = await count_ready_chunks(engine, msg.job_id, meta.total_chunks)
    if ready < meta.total_chunks:
        if msg.attempt < settings.convergence_max_attempts:
            logger.info(
                f"{prefix}{ready}/{meta.total_chunks} chunks ready, "
                f"re-polling in {settings.convergence_poll_delay}s (attempt {msg.attempt})"
            )
            await engine.queue.send(
                AnalyzeMessage(job_id=msg.job_id, attempt=msg.attempt + 1).model_dump(),
                delay_seconds=settings.convergence_poll_delay,
            )
            return None

        message = f"Timed out waiting for content fetching ({ready}/{meta.total_chunks} chunks)"
        logger.error(f"{prefix}CONVERGENCE_GIVE_UP: {message} after {msg.attempt} attempts")
        await set_schedule_status(engine.schedules, meta.schedule_id, STATUS_ERROR, message)
        await cleanup_job(engine.kv, msg.job_id, meta.total_chunks)
        return False

    chunks = []
    for i in range(meta.total_chunks):
        chunk = await load_chunk(engine.kv, msg.job_id, i)
        if chunk is not None:
            chunks.append(chunk)
    outcome = merge_chunks(chunks)

    claimed = await engine.idempotency.claim(
        completion_key(msg.job_id), kind="scan-complete", data={"schedule_id": meta.schedule_id}
    )
    if not claimed:
        logger.info(f"{prefix}completion already claimed, duplicate delivery ignored")
        return None

    budget = BudgetTracker(
        settings.fetch_worker_budget,
        used=settings.fetch_worker_budget_reserved,
        name=f"analyze:{msg.job_id}",
    )
    try:
        return await finalize_scan(engine, meta, outcome, budget=budget)
    except Exception as e:
        logger.error(f"{prefix}Completion failed: {e}", exc_info=True)
        await set_schedule_status(engine.schedules, meta.schedule_id, STATUS_ERROR, SAVE_FAILED_MESSAGE)
        return False
    finally:
        await cleanup_job(engine.kv, msg.job_id, meta.total_chunks)
