"""
Credit ledger operations.

reserve() is a read-only pre-check: it never debits. deduct() and refund() are
single atomic store operations. An insufficient balance is a normal outcome
(a rejected ReserveResult, or None from deduct), never an exception.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from ..archivist.ledger_store import UNSET, LedgerStore
from ..archivist.models import utc_now
from ..archivist.storage import ScanStore
from ..config.settings import settings
from .credits import calculate_scan_credits

logger = logging.getLogger(__name__)

# ReserveResult.code values
PROFILE_NOT_FOUND = "PROFILE_NOT_FOUND"
NO_FREE_SCANS = "NO_FREE_SCANS"
FREE_TIER_LIMIT = "FREE_TIER_LIMIT"
INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
TOO_MANY_ACCOUNTS = "TOO_MANY_ACCOUNTS"

TX_PURCHASE = "purchase"
TX_RECURRING = "recurring"
TX_SCAN_DEBIT = "scan_debit"
TX_REFUND = "refund"

FREE_TIER_WINDOW = timedelta(days=7)


@dataclass
class ReserveResult:
    ok: bool
    code: Optional[str] = None
    credits_needed: int = 0
    balance: int = 0
    free_tier: bool = False
    message: str = ""


class CreditLedger:
    """Per-tenant balance checks and mutations on top of a LedgerStore."""

    def __init__(self, store: LedgerStore, scans: ScanStore):
        self.store = store
        self.scans = scans

    async def free_scan_available(self, tenant_id: str) -> bool:
        """True while the tenant has free-tier scans left in the rolling 7-day window."""
        since = utc_now() - FREE_TIER_WINDOW
        used = await self.scans.count_free_scans_since(tenant_id, since)
        return used < settings.free_tier_scans_per_week

    async def reserve(
        self,
        tenant_id: str,
        accounts_count: int,
        range_days: int,
        model: Optional[str] = None,
        allow_free_tier: bool = True,
    ) -> ReserveResult:
        """Check whether the tenant can run a scan of this size. Does not debit."""
        if accounts_count > settings.max_accounts_per_scan:
            return ReserveResult(
                ok=False,
                code=TOO_MANY_ACCOUNTS,
                message=f"Too many accounts ({accounts_count}, max {settings.max_accounts_per_scan})",
            )

        credits_needed = calculate_scan_credits(accounts_count, range_days, model)
        profile = await self.store.get_profile(tenant_id)
        if profile is None:
            return ReserveResult(ok=False, code=PROFILE_NOT_FOUND, credits_needed=credits_needed, message="Profile not found")

        balance = profile.credits_balance
        if balance <= 0 and allow_free_tier:
            if not await self.free_scan_available(tenant_id):
                return ReserveResult(
                    ok=False,
                    code=NO_FREE_SCANS,
                    credits_needed=credits_needed,
                    balance=balance,
                    message="Weekly free scan used. Buy credits or come back next week.",
                )
            if accounts_count > settings.free_tier_max_accounts:
                return ReserveResult(
                    ok=False,
                    code=FREE_TIER_LIMIT,
                    credits_needed=credits_needed,
                    balance=balance,
                    message=f"Free tier allows up to {settings.free_tier_max_accounts} accounts. Buy credits for more.",
                )
            return ReserveResult(ok=True, credits_needed=0, balance=balance, free_tier=True)

        if balance < credits_needed:
            return ReserveResult(
                ok=False,
                code=INSUFFICIENT_CREDITS,
                credits_needed=credits_needed,
                balance=balance,
                message=f"Insufficient credits (need {credits_needed}, have {balance})",
            )

        return ReserveResult(ok=True, credits_needed=credits_needed, balance=balance)

    async def deduct(self, tenant_id: str, amount: int, description: str, metadata: Optional[dict[str, Any]] = None) -> Optional[int]:
        """Atomic debit. Returns the new balance, or None when the balance is insufficient."""
        if amount <= 0:
            profile = await self.store.get_profile(tenant_id)
            return profile.credits_balance if profile else None
        new_balance = await self.store.apply_debit(tenant_id, amount, description, metadata or {})
        if new_balance is None:
            logger.warning(f"Debit of {amount} credits refused for {tenant_id}: insufficient balance")
        else:
            logger.info(f"Debited {amount} credits from {tenant_id} (balance {new_balance})")
        return new_balance

    async def refund(self, tenant_id: str, amount: int, description: str, metadata: Optional[dict[str, Any]] = None) -> int:
        """Additive reversal of an earlier debit."""
        if amount <= 0:
            raise ValueError(f"Refund amount must be positive, got {amount}")
        new_balance = await self.store.apply_credit(tenant_id, amount, TX_REFUND, description, metadata or {})
        logger.info(f"Refunded {amount} credits to {tenant_id} (balance {new_balance})")
        return new_balance

    async def add_credits(
        self,
        tenant_id: str,
        amount: int,
        tx_type: str = TX_PURCHASE,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        new_balance = await self.store.apply_credit(tenant_id, amount, tx_type, description, metadata or {})
        logger.info(f"Added {amount} {tx_type} credits to {tenant_id} (balance {new_balance})")
        return new_balance

    async def set_subscription(self, customer_id: str, status: Optional[str], subscription_id: Any = UNSET) -> bool:
        updated = await self.store.set_subscription(customer_id, status, subscription_id)
        if not updated:
            logger.warning(f"No profile linked to customer {customer_id} for subscription status {status}")
        return updated
