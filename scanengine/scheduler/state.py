"""
Shared scan job state kept in the KV store between invocations.

- scan:{job_id}:meta          ScanJobMeta, written once at dispatch
- scan:{job_id}:chunk:{index} ChunkResult, written by each fetch worker

Both expire after job_state_ttl_seconds so an abandoned job never lingers.
Deleting the meta record cancels the job: every later message becomes a no-op.
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from ..archivist.kv_store import KVStore
from ..config.settings import settings
from ..harvester.schemas import FetchOutcome

logger = logging.getLogger(__name__)


def meta_key(job_id: str) -> str:
    return f"scan:{job_id}:meta"


def chunk_key(job_id: str, chunk_index: int) -> str:
    return f"scan:{job_id}:chunk:{chunk_index}"


class ScanJobMeta(BaseModel):
    """One firing of a schedule."""
    job_id: str
    total_chunks: int
    schedule_id: Optional[str] = None
    owner_id: str
    accounts: list[str] = Field(default_factory=list)
    days: int = 1
    model: str
    prompt: str
    prompt_hash: str
    credits_needed: int = 0
    free_tier: bool = False
    label: Optional[str] = None


class ChunkResult(FetchOutcome):
    """Output of one fetch worker for (job_id, chunk_index)."""
    job_id: str
    chunk_index: int


async def save_meta(kv: KVStore, meta: ScanJobMeta) -> None:
    await kv.put(meta_key(meta.job_id), meta.model_dump(mode="json"), ttl_seconds=settings.job_state_ttl_seconds)


async def load_meta(kv: KVStore, job_id: str) -> Optional[ScanJobMeta]:
    raw = await kv.get(meta_key(job_id))
    if raw is None:
        return None
    return ScanJobMeta.model_validate(raw)


async def save_chunk(kv: KVStore, chunk: ChunkResult) -> None:
    await kv.put(
        chunk_key(chunk.job_id, chunk.chunk_index),
        chunk.model_dump(mode="json"),
        ttl_seconds=settings.job_state_ttl_seconds,
    )


async def load_chunk(kv: KVStore, job_id: str, chunk_index: int) -> Optional[ChunkResult]:
    raw = await kv.get(chunk_key(job_id, chunk_index))
    if raw is None:
        return None
    return ChunkResult.model_validate(raw)


async def cleanup_job(kv: KVStore, job_id: str, total_chunks: int) -> None:
    """Delete meta and chunk keys. Best-effort: failures are logged and left to TTL expiry."""
    keys = [meta_key(job_id)] + [chunk_key(job_id, i) for i in range(total_chunks)]
    failures = await kv.delete_many(keys)
    if failures:
        logger.warning(f"[{job_id}] Cleanup left {failures}/{len(keys)} keys to expire")
