"""
Ledger storage: profiles (balances) and append-only credit transactions.

Every balance change is a single conditional update executed together with
its transaction row, never a read-then-write from application code, because
several invocations may charge the same tenant concurrently.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from sqlalchemy import select, update

from ..common.errors import ProfileNotFoundError
from .models import CreditTransaction, Profile

logger = logging.getLogger(__name__)

# Marker for "leave stripe_subscription_id unchanged"
UNSET: Any = object()


class LedgerStore(ABC):
    """Abstract ledger storage with atomic balance operations."""

    @abstractmethod
    async def get_profile(self, tenant_id: str) -> Optional[Profile]:
        """Current profile snapshot."""

    @abstractmethod
    async def apply_debit(self, tenant_id: str, amount: int, description: str, details: dict) -> Optional[int]:
        """Atomically subtract amount if the balance covers it.

        Returns the new balance, or None when the balance is insufficient or
        the profile does not exist. Writes a scan_debit transaction on success.
        """

    @abstractmethod
    async def apply_credit(self, tenant_id: str, amount: int, tx_type: str, description: str, details: dict) -> int:
        """Atomically add amount and write a transaction. Returns the new balance."""

    @abstractmethod
    async def list_transactions(self, tenant_id: str) -> list[CreditTransaction]:
        """Transactions for a tenant, oldest first."""

    @abstractmethod
    async def set_subscription(self, customer_id: str, status: Optional[str], subscription_id: Any = UNSET) -> bool:
        """Update subscription fields of the profile linked to a payment customer."""


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger; a lock stands in for row-level atomicity."""

    def __init__(self):
        self.profiles: dict[str, Profile] = {}
        self.transactions: list[CreditTransaction] = []
        self._lock = asyncio.Lock()
        self._next_tx_id = 1

    def add_profile(self, profile: Profile) -> Profile:
        self.profiles[profile.id] = profile
        return profile

    async def get_profile(self, tenant_id: str) -> Optional[Profile]:
        profile = self.profiles.get(tenant_id)
        if profile is None:
            return None
        return Profile(**{name: getattr(profile, name) for name in Profile.model_fields})

    async def apply_debit(self, tenant_id: str, amount: int, description: str, details: dict) -> Optional[int]:
        async with self._lock:
            profile = self.profiles.get(tenant_id)
            if profile is None or profile.credits_balance < amount:
                return None
            profile.credits_balance -= amount
            self._record(tenant_id, "scan_debit", -amount, profile.credits_balance, description, details)
            return profile.credits_balance

    async def apply_credit(self, tenant_id: str, amount: int, tx_type: str, description: str, details: dict) -> int:
        async with self._lock:
            profile = self.profiles.get(tenant_id)
            if profile is None:
                raise ProfileNotFoundError(f"No profile for tenant {tenant_id}")
            profile.credits_balance += amount
            self._record(tenant_id, tx_type, amount, profile.credits_balance, description, details)
            return profile.credits_balance

    def _record(self, tenant_id: str, tx_type: str, amount: int, balance_after: int, description: str, details: dict) -> None:
        self.transactions.append(CreditTransaction(
            id=self._next_tx_id,
            user_id=tenant_id,
            type=tx_type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            details=dict(details),
        ))
        self._next_tx_id += 1

    async def list_transactions(self, tenant_id: str) -> list[CreditTransaction]:
        return [t for t in self.transactions if t.user_id == tenant_id]

    async def set_subscription(self, customer_id: str, status: Optional[str], subscription_id: Any = UNSET) -> bool:
        async with self._lock:
            for profile in self.profiles.values():
                if profile.stripe_customer_id == customer_id:
                    profile.subscription_status = status
                    if subscription_id is not UNSET:
                        profile.stripe_subscription_id = subscription_id
                    return True
        return False


class PostgresLedgerStore(LedgerStore):
    """Ledger backed by the profiles / credit_transactions tables."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get_profile(self, tenant_id: str) -> Optional[Profile]:
        async with self._session_factory() as session:
            return await session.get(Profile, tenant_id)

    async def apply_debit(self, tenant_id: str, amount: int, description: str, details: dict) -> Optional[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Profile)
                .where(Profile.id == tenant_id, Profile.credits_balance >= amount)
                .values(credits_balance=Profile.credits_balance - amount)
                .returning(Profile.credits_balance)
            )
            new_balance = result.scalar_one_or_none()
            if new_balance is None:
                await session.rollback()
                return None
            session.add(CreditTransaction(
                user_id=tenant_id,
                type="scan_debit",
                amount=-amount,
                balance_after=new_balance,
                description=description,
                details=details,
            ))
            await session.commit()
            return new_balance

    async def apply_credit(self, tenant_id: str, amount: int, tx_type: str, description: str, details: dict) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Profile)
                .where(Profile.id == tenant_id)
                .values(credits_balance=Profile.credits_balance + amount)
                .returning(Profile.credits_balance)
            )
            new_balance = result.scalar_one_or_none()
            if new_balance is None:
                await session.rollback()
                raise ProfileNotFoundError(f"No profile for tenant {tenant_id}")
            session.add(CreditTransaction(
                user_id=tenant_id,
                type=tx_type,
                amount=amount,
                balance_after=new_balance,
                description=description,
                details=details,
            ))
            await session.commit()
            return new_balance

    async def list_transactions(self, tenant_id: str) -> list[CreditTransaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == tenant_id)
                .order_by(CreditTransaction.id)
            )
            return list(result.scalars().all())

    async def set_subscription(self, customer_id: str, status: Optional[str], subscription_id: Any = UNSET) -> bool:
        values: dict[str, Any] = {"subscription_status": status}
        if subscription_id is not UNSET:
            values["stripe_subscription_id"] = subscription_id
        async with self._session_factory() as session:
            result = await session.execute(
                update(Profile).where(Profile.stripe_customer_id == customer_id).values(**values)
            )
            await session.commit()
            return (result.rowcount or 0) > 0
