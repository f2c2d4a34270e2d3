"""
Pytest fixtures for test infrastructure.

Every test runs against the in-memory backends: no database, queue service or
provider API is needed. Provider clients are replaced by the fakes below.
"""

import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from scanengine.common.errors import UpstreamTransientError
from scanengine.common.retry import RetryPolicy, fixed_backoff


TWEET_URL_LINE = re.compile(r"^tweet_url: (\S+)$", re.MULTILINE)


def make_item(account: str, item_id: str, text: Optional[str] = None, created_at: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": item_id,
        "text": text or f"$TSLA looks strong, adding here ({account})",
        "createdAt": created_at or datetime.now(timezone.utc).isoformat(),
        "author": {"userName": account},
        "likeCount": 3,
        "retweetCount": 1,
        "viewCount": 100,
    }


class FakeContentClient:
    """Stands in for ContentClient. One item per account unless told otherwise."""

    def __init__(self, items: Optional[dict[str, list[dict[str, Any]]]] = None, delay: float = 0.0, failing: tuple = ()):
        self.items = items or {}
        self.delay = delay
        self.failing = set(failing)
        self.calls: list[str] = []

    def worst_case_cost(self) -> int:
        return 3

    async def fetch_recent(self, account: str, days: int, budget=None, now=None) -> list[dict[str, Any]]:
        self.calls.append(account)
        if self.delay:
            await asyncio.sleep(self.delay)
        if account in self.failing:
            raise UpstreamTransientError(f"upstream down for @{account}")
        if account in self.items:
            return [dict(i) for i in self.items[account]]
        return [make_item(account, f"{account}-1")]

    async def close(self):
        pass


class FakeAnalyzer:
    """Stands in for AnalysisClient: one signal per tweet_url line in the batch."""

    def __init__(self, fail_when: Optional[str] = None, error: Optional[Exception] = None):
        self.policy = RetryPolicy(max_attempts=1, backoff=fixed_backoff(0))
        self.fail_when = fail_when
        self.error = error or UpstreamTransientError("provider overloaded")
        self.calls: list[str] = []

    async def analyze(self, text: str, system_prompt: str, model: str, budget=None) -> str:
        if budget is not None:
            budget.consume(1)
        self.calls.append(text)
        if self.fail_when is not None and self.fail_when in text:
            raise self.error
        signals = []
        for url in TWEET_URL_LINE.findall(text):
            author = url.split("/")[3]
            signals.append({
                "title": f"$TSLA long from {author}",
                "summary": "Adding to the position.",
                "category": "Trade",
                "source": author,
                "tickers": [{"symbol": "$TSLA", "action": "buy"}],
                "tweet_url": url,
                "links": [],
            })
        return json.dumps(signals)

    async def close(self):
        pass


class FakePayments:
    """Stands in for PaymentClient with canned sessions and subscriptions."""

    def __init__(self):
        self.sessions: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}

    async def get_checkout_session(self, session_id: str) -> dict[str, Any]:
        return self.sessions.get(session_id, {})

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self.subscriptions.get(subscription_id, {})

    async def close(self):
        pass


@pytest.fixture
def content_client():
    return FakeContentClient()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def engine(content_client, analyzer, payments):
    from scanengine.scheduler.engine import build_memory_engine

    return build_memory_engine(content_client=content_client, analyzer=analyzer, payments=payments)


@pytest.fixture
def add_profile(engine):
    """Create a tenant profile, funded through the ledger so transactions sum to the balance."""
    from scanengine.archivist.models import Profile

    async def _add(tenant_id: str = "user-1", credits: int = 0, customer_id: Optional[str] = None):
        engine.ledger_store.add_profile(Profile(id=tenant_id, credits_balance=0, stripe_customer_id=customer_id))
        if credits:
            await engine.ledger.add_credits(tenant_id, credits, description="test funding")
        return tenant_id

    return _add


@pytest.fixture
def add_schedule(engine):
    from scanengine.archivist.models import Schedule

    def _add(**fields):
        fields.setdefault("owner_id", "user-1")
        fields.setdefault("time_of_day", "09:00")
        fields.setdefault("timezone", "UTC")
        fields.setdefault("label", "morning")
        return engine.schedules.add(Schedule(**fields))

    return _add
