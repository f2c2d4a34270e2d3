"""
Signal extraction with the analysis provider.

- AnalysisClient: one messages call per batch through AsyncAnthropic, wrapped
  in a RetryPolicy. Rejections (auth, invalid request, not found, permission)
  raise AnalysisAbortedError and abandon the job; rate limits, overload,
  timeouts and 5xx are retried with exponential backoff and jitter.
- safe_parse_signals: tolerant JSON array extraction from model output.
- analyze_batches: per-item cache, budget check and failure isolation per batch,
  cross-batch dedupe.
- enrich_signals: attach item timestamps and expand short links.
"""

import json
import logging
import re
from typing import Any, Optional

import httpx
from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic
from pydantic import ValidationError

from ..archivist.storage import AnalysisCache
from ..common.budget import BudgetTracker
from ..common.errors import (
    AnalysisAbortedError,
    BudgetExhaustedError,
    RateLimitedError,
    UpstreamTransientError,
)
from ..common.retry import RetryPolicy, exponential_backoff
from ..config.settings import settings
from ..harvester.schemas import AccountContent
from .batcher import AnalysisBatch, item_url
from .schemas import BatchResult, Signal

logger = logging.getLogger(__name__)


DEFAULT_PROMPT = """You are a financial intelligence analyst. Extract actionable trading signals from these posts.

Be selective: only extract signals with a genuine directional opinion, thesis, or actionable insight.
Skip memes without a thesis, vague hype, personal updates and promotional content.
Ground every claim in the specific post at the given tweet_url. Never mix facts across posts.

Return a JSON array. Each signal:
- "title": headline of at most 12 words, lead with $TICKER when relevant
- "summary": 1-2 sentences with the view, the reasoning and the implied positioning
- "category": "Trade" | "Insight" | "Tool" | "Resource"
- "source": account handle (no @)
- "tickers": [{"symbol": "$TICKER", "action": "buy"|"sell"|"hold"|"watch"}]
- "tweet_url": exact tweet_url from the data
- "links": external URLs mentioned. Empty array if none.

Return ONLY a valid JSON array. No markdown, no explanation."""

CODE_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
TRAILING_COMMA = re.compile(r",\s*([\]}])")
# Valid escape pairs are matched first so an escaped backslash is never split
JSON_ESCAPE = re.compile(r'(\\["\\/bfnrtu])|\\')

# Transient statuses: 429 rate limit, 529 overloaded, 5xx
PERMANENT_STATUS_CEILING = 500


def default_analysis_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.analysis_max_attempts,
        backoff=exponential_backoff(base=settings.analysis_backoff_base, cap=settings.analysis_backoff_max),
    )


class AnalysisClient:
    """Async wrapper around the analysis provider's messages API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
        policy: Optional[RetryPolicy] = None,
        max_tokens: Optional[int] = None,
    ):
        self.api_key = settings.anthropic_api_key if api_key is None else api_key
        self.policy = policy or default_analysis_policy()
        self.max_tokens = max_tokens or settings.analysis_max_tokens
        self._client = client

    def _get_client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=self.api_key,
                timeout=httpx.Timeout(settings.analysis_timeout, connect=settings.analysis_connect_timeout),
                # Retries are owned by self.policy
                max_retries=0,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def analyze(self, text: str, system_prompt: str, model: str, budget: Optional[BudgetTracker] = None) -> str:
        """Run one batch through the provider and return the raw text response."""
        if not self.api_key and self._client is None:
            raise AnalysisAbortedError("Analysis provider API key not configured")
        return await self.policy.run(
            lambda: self._create(text, system_prompt, model),
            description=f"analysis ({model}, {len(text)} chars)",
            budget=budget,
        )

    async def _create(self, text: str, system_prompt: str, model: str) -> str:
        client = self._get_client()
        try:
            response = await client.messages.create(
                model=model,
                max_tokens=self.max_tokens,
                system=[{"type": "text", "text": system_prompt, "cache_control": {"type": "ephemeral"}}],
                messages=[{"role": "user", "content": text}],
            )
        except APIConnectionError as e:
            # Includes APITimeoutError
            raise UpstreamTransientError(f"Analysis provider unreachable: {type(e).__name__}") from e
        except APIStatusError as e:
            if e.status_code == 429:
                raise RateLimitedError("Analysis provider rate limited") from e
            if e.status_code >= PERMANENT_STATUS_CEILING:
                raise UpstreamTransientError(
                    f"Analysis provider error {e.status_code}", status_code=e.status_code
                ) from e
            logger.error(f"Analysis provider rejected request ({e.status_code}): {e}")
            raise AnalysisAbortedError(
                "Analysis provider rejected the request", status_code=e.status_code
            ) from e

        return "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", None) == "text"
        )


def _escape_backslash(match: re.Match) -> str:
    return match.group(1) or "\\\\"


def _load_array(raw: str) -> Optional[list]:
    try:
        result = json.loads(raw)
    except ValueError:
        repaired = JSON_ESCAPE.sub(_escape_backslash, TRAILING_COMMA.sub(r"\1", raw))
        try:
            result = json.loads(repaired, strict=False)
        except ValueError:
            return None
    return result if isinstance(result, list) else None


def safe_parse_signals(text: Optional[str]) -> list[dict[str, Any]]:
    """Extract signals from model output. Never raises; unparseable output yields []."""
    if not text:
        return []
    clean = CODE_FENCE.sub("", text).strip()
    start, end = clean.find("["), clean.rfind("]")
    if start == -1 or end <= start:
        return []

    items = _load_array(clean[start:end + 1])
    if items is None:
        logger.warning(f"Unparseable analysis output ({len(text)} chars)")
        return []

    signals = []
    for item in items:
        if not isinstance(item, dict) or not (item.get("title") or item.get("summary")):
            continue
        try:
            signals.append(Signal.model_validate(item).model_dump())
        except ValidationError as e:
            logger.debug(f"Dropping malformed signal: {e}")
    return signals


def dedupe_signals(signals: list[dict[str, Any]]) -> list[dict[str, Any]]:
    seen: set[str] = set()
    unique = []
    for signal in signals:
        key = f"{signal.get('tweet_url') or ''}::{signal.get('title') or ''}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(signal)
    return unique


async def _cached_batch(
    cache: Optional[AnalysisCache],
    prompt_hash: str,
    batch: AnalysisBatch,
    budget: Optional[BudgetTracker],
) -> Optional[list[dict[str, Any]]]:
    """Signals for the whole batch when every item key is cached, else None."""
    if cache is None or not batch.item_urls:
        return None
    if budget is not None:
        if not budget.can_afford(1):
            return None
        budget.consume(1)
    try:
        hits = await cache.get_many(prompt_hash, batch.item_urls)
    except Exception as e:
        logger.warning(f"Analysis cache read failed: {e}")
        return None
    if len(hits) < len(batch.item_urls):
        return None
    return [signal for url in batch.item_urls for signal in hits[url]]


async def _store_batch(
    cache: Optional[AnalysisCache],
    prompt_hash: str,
    batch: AnalysisBatch,
    signals: list[dict[str, Any]],
    model: str,
    budget: Optional[BudgetTracker],
) -> None:
    if cache is None or not batch.item_urls:
        return
    if budget is not None:
        if not budget.can_afford(1):
            return
        budget.consume(1)
    grouped: dict[str, list[dict[str, Any]]] = {url: [] for url in batch.item_urls}
    for signal in signals:
        url = signal.get("tweet_url")
        if url in grouped:
            grouped[url].append(signal)
    try:
        await cache.put_many(prompt_hash, grouped, model=model, ttl_days=settings.analysis_cache_ttl_days)
    except Exception as e:
        logger.warning(f"Analysis cache write failed: {e}")


async def analyze_batches(
    batches: list[AnalysisBatch],
    analyzer: AnalysisClient,
    system_prompt: str,
    model: str,
    prompt_hash: str,
    cache: Optional[AnalysisCache] = None,
    budget: Optional[BudgetTracker] = None,
    log_prefix: str = "",
) -> BatchResult:
    """
    Analyze batches one after another.

    A failed batch is counted and skipped; a batch the budget cannot cover is
    counted as skipped. AnalysisAbortedError propagates and abandons the job.
    """
    result = BatchResult(batches_total=len(batches))
    collected: list[dict[str, Any]] = []

    for index, batch in enumerate(batches, start=1):
        label = f"{log_prefix}Batch {index}/{len(batches)}"

        cached = await _cached_batch(cache, prompt_hash, batch, budget)
        if cached is not None:
            logger.info(f"{label} served from analysis cache ({len(cached)} signals)")
            result.batches_cached += 1
            collected.extend(cached)
            continue

        if budget is not None and not budget.can_afford(analyzer.policy.max_attempts):
            logger.info(f"{label} BUDGET_SKIP: remaining={budget.remaining}")
            result.batches_skipped += 1
            continue

        logger.info(f"{label} ({len(batch.accounts)} accounts, ~{len(batch.text) // 1000}KB)")
        try:
            text = await analyzer.analyze(batch.text, system_prompt, model, budget=budget)
        except AnalysisAbortedError:
            raise
        except BudgetExhaustedError:
            logger.info(f"{label} BUDGET_SKIP: budget ran out between attempts")
            result.batches_skipped += 1
            continue
        except Exception as e:
            logger.error(f"{label} failed: {type(e).__name__}: {e}")
            result.batches_failed += 1
            continue

        signals = safe_parse_signals(text)
        collected.extend(signals)
        await _store_batch(cache, prompt_hash, batch, signals, model, budget)

    result.signals = dedupe_signals(collected)
    return result


def enrich_signals(signals: list[dict[str, Any]], accounts: list[AccountContent]) -> list[dict[str, Any]]:
    """Add tweet_time from the source item and expand short links in `links`."""
    item_times: dict[str, str] = {}
    short_links: dict[str, str] = {}

    for content in accounts:
        for item in content.items:
            url = item_url(item, content.account)
            if url and item.get("createdAt"):
                item_times[url] = item["createdAt"]
            urls = (item.get("entities") or {}).get("urls")
            if isinstance(urls, list):
                for entry in urls:
                    if isinstance(entry, dict) and entry.get("url") and entry.get("expanded_url"):
                        short_links[entry["url"]] = entry["expanded_url"]

    enriched = []
    for signal in signals:
        updated = dict(signal)
        url = signal.get("tweet_url")
        if url and url in item_times:
            updated["tweet_time"] = item_times[url]
        links = signal.get("links")
        if isinstance(links, list):
            updated["links"] = [short_links.get(link, link) if "t.co/" in link else link for link in links]
        enriched.append(updated)
    return enriched
