"""
Minimal read-only client for the payment provider (Stripe REST API).

Only the lookups the billing flows need: checkout sessions (verify-checkout)
and subscriptions (renewal metadata).
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ..common.errors import UpstreamPermanentError, UpstreamTransientError
from ..common.http_client import create_provider_client
from ..common.retry import RetryPolicy, exponential_backoff
from ..config.settings import settings

logger = logging.getLogger(__name__)

PAYMENT_TIMEOUT = 15.0


class PaymentClient:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.secret_key = settings.stripe_secret_key if secret_key is None else secret_key
        self.base_url = base_url or settings.stripe_api_base_url
        self.policy = policy or RetryPolicy(max_attempts=3, backoff=exponential_backoff(base=0.5, cap=4.0))
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_provider_client(
                base_url=self.base_url,
                timeout=PAYMENT_TIMEOUT,
                extra_headers={"Authorization": f"Bearer {self.secret_key}"},
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_checkout_session(self, session_id: str) -> dict[str, Any]:
        return await self._get(f"/checkout/sessions/{quote(session_id, safe='')}")

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._get(f"/subscriptions/{quote(subscription_id, safe='')}")

    async def _get(self, path: str) -> dict[str, Any]:
        if not self.secret_key:
            raise UpstreamPermanentError("Payment provider secret key not configured")
        return await self.policy.run(lambda: self._request(path), description=f"payment GET {path}")

    async def _request(self, path: str) -> dict[str, Any]:
        try:
            response = await self._get_client().get(path)
        except httpx.RequestError as e:
            raise UpstreamTransientError(f"Payment provider unreachable: {type(e).__name__}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamTransientError(
                f"Payment provider error {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise UpstreamPermanentError(
                f"Payment provider rejected {path} ({response.status_code})", status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamTransientError("Payment provider returned malformed JSON") from e
