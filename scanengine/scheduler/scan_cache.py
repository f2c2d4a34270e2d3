"""
Whole-scan result cache shared across tenants.

Key: "scan:" + sha256("{sorted lowercased accounts}:{days}:{prompt_hash}")[:16].
Two tenants scanning the same accounts and window with the same prompt and
model get the stored signals instead of a new fetch and analysis.
"""

import hashlib
import logging
import time
from typing import Any, Optional

from ..archivist.kv_store import KVStore
from ..common.budget import BudgetTracker
from ..config.settings import settings

logger = logging.getLogger(__name__)


def scan_cache_key(accounts: list[str], days: int, prompt_hash: str) -> str:
    joined = ",".join(sorted(a.lower() for a in accounts))
    digest = hashlib.sha256(f"{joined}:{days}:{prompt_hash}".encode("utf-8")).hexdigest()
    return f"scan:{digest[:16]}"


async def read_scan_cache(
    kv: KVStore,
    accounts: list[str],
    days: int,
    prompt_hash: str,
    budget: Optional[BudgetTracker] = None,
) -> Optional[dict[str, Any]]:
    """Cached {signals, total_items} when a non-empty result exists. Failures read as a miss."""
    if budget is not None:
        if not budget.can_afford(1):
            return None
        budget.consume(1)
    try:
        cached = await kv.get(scan_cache_key(accounts, days, prompt_hash))
    except Exception as e:
        logger.warning(f"Scan cache check failed: {e}")
        return None
    if not isinstance(cached, dict) or not cached.get("signals"):
        return None
    return cached


async def write_scan_cache(
    kv: KVStore,
    accounts: list[str],
    days: int,
    prompt_hash: str,
    signals: list[dict[str, Any]],
    total_items: int,
    budget: Optional[BudgetTracker] = None,
) -> None:
    if not signals or not prompt_hash:
        return
    if budget is not None:
        if not budget.can_afford(1):
            return
        budget.consume(1)
    try:
        await kv.put(
            scan_cache_key(accounts, days, prompt_hash),
            {"signals": signals, "total_items": total_items, "ts": int(time.time())},
            ttl_seconds=settings.scan_cache_ttl_seconds,
        )
    except Exception as e:
        logger.warning(f"Scan cache write failed: {e}")
