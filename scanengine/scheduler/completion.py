"""
Scan completion: analysis, persistence, billing and the final schedule status.

Shared by the convergence poller (queued scans) and the inline fallback.
Every outcome ends in a terminal schedule status; the caller owns cleanup of
transient job state.
"""

import logging
from typing import Any, Optional

from ..analyst.batcher import build_analysis_batches, item_url
from ..analyst.extractor import analyze_batches, enrich_signals
from ..archivist.models import STATUS_ERROR, STATUS_SUCCESS
from ..archivist.storage import build_scan_record
from ..billing.settlement import save_then_charge
from ..common.budget import BudgetTracker
from ..common.errors import AnalysisAbortedError
from ..harvester.schemas import AccountContent, FetchOutcome
from .engine import ScanEngine
from .scan_cache import write_scan_cache
from .state import ScanJobMeta
from .status import set_schedule_status

logger = logging.getLogger(__name__)

ANALYSIS_REJECTED_MESSAGE = "Analysis provider rejected the request"
META_TEXT_LIMIT = 500


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def no_items_message(outcome: FetchOutcome, accounts_count: int, days: int) -> str:
    if outcome.failed_accounts:
        return f"No items ({len(outcome.failed_accounts)}/{accounts_count} accounts failed)"
    window = "day" if days == 1 else f"{days} days"
    return f"No items found for {accounts_count} accounts in the last {window}"


def success_message(signal_count: int, total_items: int, batches_failed: int, failed: int, skipped: int) -> str:
    parts = [f"{signal_count} signals from {total_items} items"]
    if batches_failed:
        parts.append(f"({batches_failed} {_plural(batches_failed, 'batch', 'batches')} failed)")
    if failed:
        parts.append(f"({failed} unreachable)")
    if skipped:
        parts.append(f"({skipped} skipped, budget limit)")
    return " ".join(parts)


def build_item_meta(signals: list[dict[str, Any]], accounts: list[AccountContent]) -> dict[str, Any]:
    """Source text, author and time for each item a signal points at."""
    lookup = {}
    for content in accounts:
        for item in content.items:
            url = item_url(item, content.account)
            if url:
                lookup[url] = {
                    "text": (item.get("text") or "")[:META_TEXT_LIMIT],
                    "author": (item.get("author") or {}).get("userName") or content.account,
                    "time": item.get("createdAt") or "",
                }

    meta = {}
    for signal in signals:
        url = signal.get("tweet_url")
        if not url:
            continue
        original = lookup.get(url, {})
        meta[url] = {
            "text": (original.get("text") or signal.get("summary") or "")[:META_TEXT_LIMIT],
            "author": original.get("author") or signal.get("source") or "",
            "time": original.get("time") or signal.get("tweet_time") or "",
        }
    return meta


def charge_description(meta: ScanJobMeta) -> str:
    label = meta.label or "scan"
    return f'Scheduled scan "{label}": {len(meta.accounts)} accounts x {meta.days}d'


async def persist_and_charge(
    engine: ScanEngine,
    meta: ScanJobMeta,
    signals: list[dict[str, Any]],
    total_items: int,
    item_meta: Optional[dict[str, Any]] = None,
) -> None:
    scan = build_scan_record(
        user_id=meta.owner_id,
        accounts=meta.accounts,
        days=meta.days,
        signals=signals,
        total_items=total_items,
        credits_charged=meta.credits_needed,
        free_tier=meta.free_tier,
        schedule_id=meta.schedule_id,
        label=meta.label,
        item_meta=item_meta,
    )
    await save_then_charge(
        engine.scans,
        engine.ledger,
        scan,
        meta.credits_needed,
        charge_description(meta),
        {"accounts_count": len(meta.accounts), "range_days": meta.days, "scheduled": True, "job_id": meta.job_id},
    )


async def complete_from_cache(engine: ScanEngine, meta: ScanJobMeta, cached: dict[str, Any]) -> str:
    """Persist and charge a whole-scan cache hit. Returns the success message."""
    signals = cached.get("signals") or []
    await persist_and_charge(engine, meta, signals, int(cached.get("total_items") or 0))
    message = f"{len(signals)} signals (cached)"
    await set_schedule_status(engine.schedules, meta.schedule_id, STATUS_SUCCESS, message)
    logger.info(f"[{meta.job_id}] Served from scan cache: {message}")
    return message


async def finalize_scan(
    engine: ScanEngine,
    meta: ScanJobMeta,
    outcome: FetchOutcome,
    budget: Optional[BudgetTracker] = None,
) -> bool:
    """
    Analyze merged content, persist and charge, then record the final status.

    Returns True on success. Failures that are part of normal operation (no
    items, analysis failure or rejection) set an error status and return False.
    Persistence errors propagate.
    """
    prefix = f"[{meta.job_id}] "
    accounts_count = len(meta.accounts)

    if outcome.total_items == 0:
        message = no_items_message(outcome, accounts_count, meta.days)
        logger.info(f"{prefix}{message}")
        await set_schedule_status(engine.schedules, meta.schedule_id, STATUS_ERROR, message)
        return False

    batches = build_analysis_batches(outcome.accounts, prompt_len=len(meta.prompt))
    logger.info(f"{prefix}Analyzing {outcome.total_items} items in {len(batches)} batches")

    try:
        result = await analyze_batches(
            batches,
            engine.analyzer,
            system_prompt=meta.prompt,
            model=meta.model,
            prompt_hash=meta.prompt_hash,
            cache=engine.analysis_cache,
            budget=budget,
            log_prefix=prefix,
        )
    except AnalysisAbortedError as e:
        logger.error(f"{prefix}Analysis aborted: {e}")
        await set_schedule_status(engine.schedules, meta.schedule_id, STATUS_ERROR, ANALYSIS_REJECTED_MESSAGE)
        return False

    batches_failed = result.batches_failed + result.batches_skipped
    if not result.signals and batches_failed > 0:
        message = f"Analysis failed ({batches_failed}/{result.batches_total} batches failed)"
        logger.error(f"{prefix}{message}")
        await set_schedule_status(engine.schedules, meta.schedule_id, STATUS_ERROR, message)
        return False

    signals = enrich_signals(result.signals, outcome.accounts)
    await persist_and_charge(engine, meta, signals, outcome.total_items, build_item_meta(signals, outcome.accounts))
    await write_scan_cache(
        engine.kv, meta.accounts, meta.days, meta.prompt_hash, signals, outcome.total_items, budget=budget
    )

    message = success_message(
        len(signals),
        outcome.total_items,
        batches_failed,
        len(outcome.failed_accounts),
        len(outcome.skipped_accounts),
    )
    await set_schedule_status(engine.schedules, meta.schedule_id, STATUS_SUCCESS, message)
    logger.info(f"{prefix}Complete: {message}")
    return True
