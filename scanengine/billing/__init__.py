"""
Credit ledger, settlement and payment event handling.
"""
from .credits import CREDIT_PACKS, CreditPack, calculate_scan_credits
from .ledger import CreditLedger, ReserveResult
from .settlement import Settlement, save_then_charge, charge_then_save
from .idempotency import IdempotencyGuard, InMemoryIdempotencyGuard, PostgresIdempotencyGuard
from .payment_client import PaymentClient
from .webhooks import WebhookProcessor, verify_webhook_signature

__all__ = [
    "CREDIT_PACKS",
    "CreditPack",
    "calculate_scan_credits",
    "CreditLedger",
    "ReserveResult",
    "Settlement",
    "save_then_charge",
    "charge_then_save",
    "IdempotencyGuard",
    "InMemoryIdempotencyGuard",
    "PostgresIdempotencyGuard",
    "PaymentClient",
    "WebhookProcessor",
    "verify_webhook_signature",
]
