"""
Concurrent fetching of a list of accounts under one budget.

Each account gets its own child budget sized for the worst case of one cached
fetch. Accounts that no longer fit are skipped (reported, not failed), so the
invocation always finishes with a partial result instead of overrunning.
"""

import asyncio
import logging
from typing import Any, Optional

from ..common.budget import BudgetTracker
from ..common.errors import BudgetExhaustedError
from ..config.settings import settings
from .fetch_cache import ContentFetchCache
from .schemas import AccountContent, FetchOutcome

logger = logging.getLogger(__name__)

ERROR_TEXT_LIMIT = 200


def dedupe_items(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop repeated items by id, keeping first occurrence. Items without an id are kept."""
    seen: set[str] = set()
    unique = []
    for item in items:
        item_id = item.get("id")
        if item_id is not None:
            key = str(item_id)
            if key in seen:
                continue
            seen.add(key)
        unique.append(item)
    return unique


async def fetch_accounts(
    cache: ContentFetchCache,
    accounts: list[str],
    days: int,
    budget: BudgetTracker,
    concurrency: Optional[int] = None,
    log_prefix: str = "",
) -> FetchOutcome:
    """
    Fetch every account with bounded concurrency.

    Returns:
        FetchOutcome with one AccountContent per input account, in input order.
    """
    semaphore = asyncio.Semaphore(concurrency or settings.fetch_concurrency)
    per_account_cost = cache.worst_case_cost()

    async def fetch_one(account: str) -> AccountContent:
        async with semaphore:
            account_budget = budget.allocate(per_account_cost, name=f"fetch:{account}")
            if account_budget is None:
                logger.info(f"{log_prefix}BUDGET_SKIP: @{account} (remaining={budget.remaining})")
                return AccountContent(account=account, skipped=True)
            try:
                items = await cache.fetch(account, days, budget=account_budget)
                return AccountContent(account=account, items=dedupe_items(items))
            except BudgetExhaustedError:
                logger.info(f"{log_prefix}BUDGET_SKIP: @{account} ran out mid-fetch")
                return AccountContent(account=account, skipped=True)
            except Exception as e:
                logger.warning(f"{log_prefix}Fetch failed for @{account}: {e}")
                return AccountContent(account=account, error=str(e)[:ERROR_TEXT_LIMIT] or type(e).__name__)
            finally:
                account_budget.release()

    results = await asyncio.gather(*[fetch_one(a) for a in accounts], return_exceptions=True)

    contents = []
    for account, result in zip(accounts, results):
        if isinstance(result, BaseException):
            logger.error(f"{log_prefix}Unexpected fetch failure for @{account}: {result}")
            contents.append(AccountContent(account=account, error=str(result)[:ERROR_TEXT_LIMIT]))
        else:
            contents.append(result)

    outcome = FetchOutcome.from_accounts(contents)
    logger.info(
        f"{log_prefix}Fetched {len(accounts)} accounts: {outcome.total_items} items, "
        f"{len(outcome.failed_accounts)} failed, {len(outcome.skipped_accounts)} skipped "
        f"(budget {budget.used}/{budget.limit})"
    )
    return outcome
