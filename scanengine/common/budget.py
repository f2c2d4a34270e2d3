"""
Per-invocation resource budget.

Every outbound call or store operation made while handling one message (or one
inline scan) is charged against a single BudgetTracker. Callers check the
worst-case cost of a unit of work before starting it and record a skip when it
does not fit, so an invocation degrades to a partial result instead of hitting
the runtime's hard call ceiling.

Usage:
    budget = BudgetTracker(limit=900, used=3)
    account_budget = budget.allocate(9)   # None when it no longer fits
    if account_budget is None:
        skipped.append(account)
    else:
        try:
            await fetch(account, budget=account_budget)
        finally:
            account_budget.release()
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class BudgetTracker:
    """Mutable {used, limit} counter passed by reference through one invocation."""

    def __init__(self, limit: int, used: int = 0, name: str = "budget", parent: Optional["BudgetTracker"] = None):
        if limit < 0:
            raise ValueError(f"Budget limit must be non-negative, got {limit}")
        self.limit = limit
        self.used = used
        self.name = name
        self._parent = parent
        self._released = False

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def can_afford(self, cost: int = 1) -> bool:
        """True when `cost` more units fit under the ceiling."""
        return self.used + cost <= self.limit

    def consume(self, units: int = 1) -> None:
        """Charge units of outbound work.

        Never raises: callers are expected to check can_afford() first.
        Overruns are logged so they show up during tuning.
        """
        self.used += units
        if self.used > self.limit:
            logger.warning(f"BUDGET_OVERRUN: {self.name} used={self.used} limit={self.limit}")

    def allocate(self, units: int, name: Optional[str] = None) -> Optional["BudgetTracker"]:
        """Carve out a child budget of exactly `units`, charged to this one now.

        Returns None when the allocation does not fit. The child returns its
        unspent units on release(), so concurrent work items can never overrun
        the parent ceiling between them.
        """
        if not self.can_afford(units):
            return None
        self.used += units
        return BudgetTracker(limit=units, name=name or f"{self.name}/child", parent=self)

    def release(self) -> None:
        """Return the unspent part of an allocation to the parent. Idempotent."""
        if self._parent is None or self._released:
            return
        self._released = True
        self._parent.used -= self.remaining

    def __repr__(self) -> str:
        return f"BudgetTracker(name={self.name!r}, used={self.used}, limit={self.limit})"
