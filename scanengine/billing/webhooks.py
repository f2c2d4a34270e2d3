"""
Payment webhook processing and checkout verification.

Credits for a checkout are granted at most once, whichever path gets there
first: the webhook and the client's verify-checkout call both claim
`fulfill:{session_id}` before calling add_credits. A failed grant releases its
claims and raises FulfillmentError so the provider redelivers the event.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional

from ..common.errors import (
    CheckoutOwnershipError,
    FulfillmentError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from ..config.settings import settings
from .credits import describe_pack_purchase
from .idempotency import IdempotencyGuard
from .ledger import TX_PURCHASE, TX_RECURRING, CreditLedger
from .payment_client import PaymentClient

logger = logging.getLogger(__name__)


def verify_webhook_signature(
    payload: bytes | str,
    header: Optional[str],
    secret: str,
    tolerance: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """Check a `t=<unix>,v1=<hex>` signature header against HMAC-SHA256("{t}.{payload}").

    Rejects timestamps more than `tolerance` seconds away from now in either
    direction. Comparison is constant-time.
    """
    if not header or not secret:
        return False
    tolerance = settings.webhook_tolerance_seconds if tolerance is None else tolerance

    timestamp = None
    signatures = []
    for pair in header.split(","):
        key, _, value = pair.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    if not timestamp or not signatures:
        return False

    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        return False

    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    expected = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


def _credits_from(metadata: dict[str, Any]) -> int:
    try:
        return max(0, int(metadata.get("credits") or 0))
    except (TypeError, ValueError):
        return 0


class WebhookProcessor:
    """Routes verified payment events to ledger operations."""

    def __init__(
        self,
        ledger: CreditLedger,
        guard: IdempotencyGuard,
        payments: PaymentClient,
        secret: Optional[str] = None,
    ):
        self.ledger = ledger
        self.guard = guard
        self.payments = payments
        self.secret = settings.stripe_webhook_secret if secret is None else secret

    async def handle(self, payload: bytes | str, signature_header: Optional[str]) -> dict[str, Any]:
        if not self.secret:
            raise WebhookSignatureError("Webhook secret not configured")
        if not verify_webhook_signature(payload, signature_header, self.secret):
            raise WebhookSignatureError("Invalid signature")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookPayloadError("Invalid webhook payload") from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookPayloadError("Invalid webhook payload")

        event_id, event_type = event["id"], event["type"]
        obj = (event.get("data") or {}).get("object") or {}

        if not await self.guard.claim(event_id, kind=event_type, data={"object_id": obj.get("id")}):
            logger.info(f"Duplicate webhook event {event_id} ({event_type}) ignored")
            return {"received": True, "duplicate": True}

        # Any failure reopens the event so the provider's redelivery is processed
        try:
            await self._route(event_type, obj)
        except Exception:
            await self.guard.release(event_id)
            raise

        return {"received": True}

    async def _route(self, event_type: str, obj: dict[str, Any]) -> None:
        if event_type == "checkout.session.completed":
            await self._checkout_completed(obj)
        elif event_type == "invoice.paid":
            await self._invoice_paid(obj)
        elif event_type == "customer.subscription.updated":
            await self.ledger.set_subscription(obj.get("customer"), obj.get("status"))
        elif event_type == "customer.subscription.deleted":
            await self.ledger.set_subscription(obj.get("customer"), "canceled", subscription_id=None)
        elif event_type == "invoice.payment_failed":
            await self.ledger.set_subscription(obj.get("customer"), "past_due")
        else:
            logger.debug(f"Unhandled webhook event type {event_type}")

    async def _checkout_completed(self, session: dict[str, Any]) -> None:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        credits = _credits_from(metadata)
        if credits > 0 and user_id:
            await self._fulfill_session(session, user_id, credits)
        await self._save_subscription(session)

    async def _invoice_paid(self, invoice: dict[str, Any]) -> None:
        # First payment is fulfilled by checkout.session.completed
        if invoice.get("billing_reason") != "subscription_cycle" or not invoice.get("subscription"):
            return

        try:
            subscription = await self.payments.get_subscription(invoice["subscription"])
            metadata = subscription.get("metadata") or {}
            user_id = metadata.get("user_id")
            credits = _credits_from(metadata)
            if credits > 0 and user_id:
                pack_id = metadata.get("pack_id") or "unknown"
                await self.ledger.add_credits(
                    user_id,
                    credits,
                    TX_RECURRING,
                    describe_pack_purchase(pack_id, credits, renewal=True),
                    {"stripe_invoice_id": invoice.get("id"), "pack_id": pack_id},
                )
        except Exception as e:
            logger.critical(f"[BILLING CRITICAL] Failed to fulfill invoice.paid renewal (invoice {invoice.get('id')}): {e}")
            raise FulfillmentError("Renewal fulfillment failed, please retry") from e

    async def _fulfill_session(self, session: dict[str, Any], user_id: str, credits: int) -> bool:
        """Grant a session's credits once. Returns True if this call granted them."""
        session_id = session.get("id")
        key = f"fulfill:{session_id}"
        if not await self.guard.claim(key, kind="checkout.fulfillment", data={"user_id": user_id, "credits": credits}):
            logger.info(f"Checkout {session_id} already fulfilled")
            return False

        metadata = session.get("metadata") or {}
        pack_id = metadata.get("pack_id") or "unknown"
        tx_type = TX_RECURRING if session.get("mode") == "subscription" else TX_PURCHASE
        try:
            await self.ledger.add_credits(
                user_id,
                credits,
                tx_type,
                describe_pack_purchase(pack_id, credits),
                {"stripe_session_id": session_id, "pack_id": pack_id},
            )
        except Exception as e:
            await self.guard.release(key)
            logger.critical(
                f"[BILLING CRITICAL] Failed to add {credits} credits for user {user_id} (session {session_id}): {e}"
            )
            raise FulfillmentError("Credit fulfillment failed, please retry") from e
        return True

    async def _save_subscription(self, session: dict[str, Any]) -> None:
        if session.get("mode") != "subscription" or not session.get("subscription"):
            return
        try:
            await self.ledger.set_subscription(session.get("customer"), "active", subscription_id=session["subscription"])
        except Exception as e:
            logger.error(f"[BILLING] Failed to save subscription ID for customer {session.get('customer')}: {e}")

    async def verify_checkout(self, session_id: str, tenant_id: str) -> dict[str, Any]:
        """
        Client-side fallback for a missed or delayed webhook.

        Raises:
            WebhookPayloadError: the session does not exist
            CheckoutOwnershipError: the session belongs to another tenant
            FulfillmentError: credits could not be granted
        """
        session = await self.payments.get_checkout_session(session_id)
        if not session.get("id"):
            raise WebhookPayloadError("Invalid session")

        metadata = session.get("metadata") or {}
        if metadata.get("user_id") != tenant_id:
            raise CheckoutOwnershipError("Session does not belong to this user")

        if session.get("payment_status") != "paid":
            return {"status": "pending", "payment_status": session.get("payment_status")}

        credited = False
        credits = _credits_from(metadata)
        if credits > 0:
            credited = await self._fulfill_session(session, tenant_id, credits)
        await self._save_subscription(session)

        profile = await self.ledger.store.get_profile(tenant_id)
        balance = profile.credits_balance if profile else 0
        return {
            "status": "fulfilled",
            "credited": credited,
            "credits_balance": balance,
            "has_credits": balance > 0,
            "subscription_status": profile.subscription_status if profile else None,
        }
