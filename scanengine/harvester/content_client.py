"""
Upstream content provider client.

Fetches an account's recent items page by page until results fall outside the
lookback window, with:
- Per-request timeout
- RetryPolicy per page (429 exponential backoff capped at 15s, 5xx / network
  errors retried after a short fixed delay, other 4xx permanent)
- One budget unit per HTTP attempt; stops with a partial result when the
  budget runs out
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from dateutil import parser as date_parser

from ..common.budget import BudgetTracker
from ..common.errors import (
    BudgetExhaustedError,
    RateLimitedError,
    UpstreamPermanentError,
    UpstreamTransientError,
)
from ..common.http_client import create_provider_client
from ..common.retry import RetryPolicy, exponential_backoff, fixed_backoff
from ..config.settings import settings

logger = logging.getLogger(__name__)

LAST_ITEMS_PATH = "/twitter/user/last_tweets"


def parse_item_time(value: Any) -> Optional[datetime]:
    """Parse a provider timestamp ("Tue Dec 10 07:00:30 +0000 2024" or ISO 8601)."""
    if not value:
        return None
    try:
        parsed = date_parser.parse(str(value))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def default_page_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=1 + settings.content_max_retries,
        backoff=fixed_backoff(settings.content_retry_delay),
        backoff_overrides=[
            (RateLimitedError, exponential_backoff(
                base=settings.content_rate_limit_backoff_base,
                cap=settings.content_rate_limit_backoff_max,
            )),
        ],
    )


class ContentClient:
    """
    Async client for the upstream content provider.

    Usage:
        client = ContentClient()
        items = await client.fetch_recent("someaccount", days=1, budget=budget)
        await client.close()
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        page_policy: Optional[RetryPolicy] = None,
        max_pages: Optional[int] = None,
        page_delay: Optional[float] = None,
    ):
        self.api_key = settings.content_api_key if api_key is None else api_key
        self.base_url = base_url or settings.content_api_base_url
        self.page_policy = page_policy or default_page_policy()
        self.max_pages = max_pages or settings.content_max_pages
        self.page_delay = settings.content_page_delay if page_delay is None else page_delay
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_provider_client(
                base_url=self.base_url,
                timeout=settings.content_fetch_timeout,
                extra_headers={"X-API-Key": self.api_key},
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def worst_case_cost(self) -> int:
        """Budget units one fetch_recent call can spend at most."""
        return self.max_pages * self.page_policy.max_attempts

    async def fetch_recent(
        self,
        account: str,
        days: int,
        budget: Optional[BudgetTracker] = None,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch an account's items newer than now - days.

        Args:
            account: Account handle without "@"
            days: Lookback window in days
            budget: Optional per-invocation budget; one unit per HTTP attempt
            now: Reference time (defaults to current UTC time)

        Returns:
            Items newest first. Partial when the budget ran out mid-pagination.

        Raises:
            UpstreamPermanentError: auth failure / bad request / not configured
            UpstreamTransientError: retries exhausted on the first page
        """
        if not self.api_key:
            raise UpstreamPermanentError("Content provider API key not configured")

        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        items: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        pages = 0

        while pages < self.max_pages:
            page_label = f"content fetch @{account} page {pages + 1}"
            try:
                data = await self.page_policy.run(
                    lambda: self._get_page(account, cursor),
                    description=page_label,
                    budget=budget,
                )
            except BudgetExhaustedError:
                logger.info(f"BUDGET_SKIP: {page_label} not fetched ({len(items)} items kept)")
                break
            except UpstreamTransientError:
                # Later pages failing still leaves a usable partial result
                if pages == 0:
                    raise
                logger.warning(f"{page_label} failed after retries, keeping {len(items)} items")
                break

            if data.get("status") == "error":
                logger.warning(f"Content provider returned error status for @{account}: {data.get('msg', '')}")
                break

            page_data = data.get("data") or data
            page_items = page_data.get("tweets") or []
            if not page_items:
                break

            hit_cutoff = False
            for item in page_items:
                created = parse_item_time(item.get("createdAt"))
                if created is not None and created < cutoff:
                    hit_cutoff = True
                    break
                items.append(item)

            if hit_cutoff:
                break
            if not page_data.get("has_next_page") or not page_data.get("next_cursor"):
                break
            cursor = page_data["next_cursor"]
            pages += 1
            if self.page_delay:
                await asyncio.sleep(self.page_delay)

        return items

    async def _get_page(self, account: str, cursor: Optional[str]) -> dict[str, Any]:
        """One HTTP request, with the response classified into the error taxonomy."""
        params = {"userName": account}
        if cursor:
            params["cursor"] = cursor

        client = self._get_client()
        try:
            response = await client.get(LAST_ITEMS_PATH, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamTransientError(f"Content provider timeout for @{account}") from e
        except httpx.RequestError as e:
            raise UpstreamTransientError(f"Content provider network error for @{account}: {e}") from e

        if response.status_code == 429:
            retry_after_header = response.headers.get("Retry-After")
            retry_after = None
            if retry_after_header:
                try:
                    retry_after = min(float(retry_after_header), settings.content_rate_limit_backoff_max)
                except ValueError:
                    logger.warning(f"Non-numeric Retry-After header: {retry_after_header}")
            raise RateLimitedError(f"Content provider rate limited @{account}", retry_after=retry_after)

        if response.status_code >= 500:
            raise UpstreamTransientError(
                f"Content provider server error {response.status_code}", status_code=response.status_code
            )

        if response.status_code >= 400:
            raise UpstreamPermanentError(
                f"Content provider rejected request for @{account} ({response.status_code})",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamTransientError(f"Content provider returned malformed JSON for @{account}") from e
        if not isinstance(payload, dict):
            raise UpstreamTransientError(f"Content provider returned unexpected payload for @{account}")
        return payload
