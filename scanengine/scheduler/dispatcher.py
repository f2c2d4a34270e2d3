"""
Chunk dispatcher for scheduled scans.

dispatch_scheduled_scan():
1. Mark the schedule running (fresh last_run_at)
2. prepare_scan(): resolve accounts, window, model, prompt, credit check
3. Whole-scan cache hit -> persist, charge, success
4. Write ScanJobMeta, send one fetch-chunk message per chunk (batched), then
   one delayed analyze message for the convergence poller
5. A send failure after the meta is written deletes the job state, so messages
   already queued find no meta and do nothing
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..analyst.extractor import DEFAULT_PROMPT
from ..archivist.models import STATUS_ERROR, Schedule, new_id
from ..archivist.schedule_store import ScheduleStore
from ..common.errors import ScanEngineError
from ..config.settings import settings
from .completion import complete_from_cache
from .engine import ScanEngine
from .messages import AnalyzeMessage, FetchChunkMessage
from .scan_cache import read_scan_cache
from .state import ScanJobMeta, cleanup_job, save_meta
from .status import mark_running, set_schedule_status

logger = logging.getLogger(__name__)

ACCOUNT_HANDLE = re.compile(r"^[A-Za-z0-9_]{1,15}$")
NO_ACCOUNTS_MESSAGE = "No accounts: add lists or accounts to this schedule"
DISPATCH_FAILED_MESSAGE = "Dispatch failed, will retry at next scheduled time"


class ScanNotRunnable(ScanEngineError):
    """The schedule cannot run this time (no accounts, credit rejection)."""
    pass


@dataclass
class PreparedScan:
    schedule: Schedule
    accounts: list[str]
    days: int
    model: str
    prompt: str
    prompt_hash: str
    credits_needed: int
    free_tier: bool

    def to_meta(self, job_id: str, total_chunks: int) -> ScanJobMeta:
        return ScanJobMeta(
            job_id=job_id,
            total_chunks=total_chunks,
            schedule_id=self.schedule.id,
            owner_id=self.schedule.owner_id,
            accounts=self.accounts,
            days=self.days,
            model=self.model,
            prompt=self.prompt,
            prompt_hash=self.prompt_hash,
            credits_needed=self.credits_needed,
            free_tier=self.free_tier,
            label=self.schedule.label or None,
        )


def normalize_accounts(values: list[str], limit: Optional[int] = None) -> list[str]:
    """Strip '@', lowercase, drop invalid handles, dedupe keeping order, cap at limit."""
    limit = limit or settings.max_accounts_per_scan
    seen: set[str] = set()
    accounts = []
    for raw in values:
        if not isinstance(raw, str):
            continue
        handle = raw.strip().lstrip("@").lower()
        if not ACCOUNT_HANDLE.match(handle):
            logger.debug(f"Dropping invalid account handle {raw!r}")
            continue
        if handle not in seen:
            seen.add(handle)
            accounts.append(handle)
    if len(accounts) > limit:
        logger.warning(f"Account list truncated from {len(accounts)} to {limit}")
        accounts = accounts[:limit]
    return accounts


async def resolve_accounts(schedules: ScheduleStore, schedule: Schedule) -> tuple[list[str], str]:
    """Schedule's own list, else its preset, else the union of the owner's recent presets."""
    accounts = normalize_accounts(schedule.accounts or [])
    if accounts:
        return accounts, "schedule"

    if schedule.preset_id:
        try:
            preset = await schedules.get_preset(schedule.preset_id, schedule.owner_id)
            if preset is not None:
                accounts = normalize_accounts(preset.accounts or [])
                if accounts:
                    return accounts, "preset"
            logger.info(f"Preset {schedule.preset_id} not found or empty, trying recent presets")
        except Exception as e:
            logger.warning(f"Preset lookup failed for schedule {schedule.id}: {e}")

    try:
        presets = await schedules.recent_presets(schedule.owner_id, settings.recent_preset_fallback_count)
        combined = [a for preset in presets for a in (preset.accounts or [])]
        accounts = normalize_accounts(combined)
        if accounts:
            return accounts, "recent_presets"
    except Exception as e:
        logger.warning(f"Recent presets lookup failed for schedule {schedule.id}: {e}")

    return [], "none"


def compute_prompt_hash(model: str, prompt: str) -> str:
    return hashlib.sha256(f"{model}\n{prompt}".encode("utf-8")).hexdigest()[:16]


def clamp_window(days: Optional[int]) -> int:
    return max(settings.min_window_days, min(settings.max_window_days, days or 1))


def chunk_accounts(accounts: list[str], size: Optional[int] = None) -> list[list[str]]:
    size = size or settings.queue_chunk_size
    return [accounts[i:i + size] for i in range(0, len(accounts), size)]


def analyze_delay(total_chunks: int) -> int:
    """Initial wait before the first convergence check."""
    return min(
        settings.convergence_initial_delay_max,
        max(settings.convergence_initial_delay_min, total_chunks * settings.convergence_delay_per_chunk),
    )


async def prepare_scan(engine: ScanEngine, schedule: Schedule) -> PreparedScan:
    """Resolve everything a run needs. Raises ScanNotRunnable with a user-facing message."""
    accounts, source = await resolve_accounts(engine.schedules, schedule)
    if not accounts:
        raise ScanNotRunnable(NO_ACCOUNTS_MESSAGE)
    logger.info(f"Schedule {schedule.id}: {len(accounts)} accounts (from {source})")

    days = clamp_window(schedule.range_days)
    model = schedule.model or settings.default_model
    prompt = schedule.prompt or DEFAULT_PROMPT

    reservation = await engine.ledger.reserve(
        schedule.owner_id,
        len(accounts),
        days,
        model,
        allow_free_tier=settings.scheduled_scans_use_free_tier,
    )
    if not reservation.ok:
        raise ScanNotRunnable(reservation.message)

    return PreparedScan(
        schedule=schedule,
        accounts=accounts,
        days=days,
        model=model,
        prompt=prompt,
        prompt_hash=compute_prompt_hash(model, prompt),
        credits_needed=reservation.credits_needed,
        free_tier=reservation.free_tier,
    )


async def dispatch_scheduled_scan(engine: ScanEngine, schedule: Schedule) -> Optional[str]:
    """
    Fan a due schedule out into queue messages.

    Returns the job id, or None when the run ended at dispatch time (cache hit
    or rejection). Never raises: failures become an error status.
    """
    await mark_running(engine.schedules, schedule.id)
    saved = False

    try:
        prepared = await prepare_scan(engine, schedule)
        job_id = new_id()

        cached = await read_scan_cache(engine.kv, prepared.accounts, prepared.days, prepared.prompt_hash)
        if cached is not None:
            await complete_from_cache(engine, prepared.to_meta(job_id, total_chunks=0), cached)
            return None

        chunks = chunk_accounts(prepared.accounts)
        await save_meta(engine.kv, prepared.to_meta(job_id, total_chunks=len(chunks)))
        saved = True

        messages = [
            FetchChunkMessage(job_id=job_id, chunk_index=i, accounts=chunk, days=prepared.days).model_dump()
            for i, chunk in enumerate(chunks)
        ]
        batch_size = min(settings.queue_send_batch_size, engine.queue.max_batch_size)
        for i in range(0, len(messages), batch_size):
            await engine.queue.send_batch(messages[i:i + batch_size])

        delay = analyze_delay(len(chunks))
        await engine.queue.send(AnalyzeMessage(job_id=job_id, attempt=1).model_dump(), delay_seconds=delay)

        logger.info(
            f"[{job_id}] Dispatched {len(chunks)} fetch-chunks + 1 analyze (delay={delay}s) "
            f"for {len(prepared.accounts)} accounts (schedule {schedule.id})"
        )
        return job_id

    except ScanNotRunnable as e:
        logger.info(f"Schedule {schedule.id} not run: {e}")
        await set_schedule_status(engine.schedules, schedule.id, STATUS_ERROR, str(e))
    except Exception as e:
        logger.error(f"Dispatch failed for schedule {schedule.id}: {e}", exc_info=True)
        if saved:
            # Without meta, fetch-chunks already on the queue become no-ops
            await cleanup_job(engine.kv, job_id, len(chunks))
        await set_schedule_status(engine.schedules, schedule.id, STATUS_ERROR, DISPATCH_FAILED_MESSAGE)
    return None
