"""
Explicit retry policies for outbound calls.

A RetryPolicy bundles the attempt ceiling, the backoff function and the
retryable-error predicate, so call sites configure behavior instead of
re-writing retry loops.

Usage:
    policy = RetryPolicy(
        max_attempts=3,
        backoff=exponential_backoff(base=2.0, cap=15.0),
        retryable=lambda e: isinstance(e, UpstreamTransientError),
    )
    data = await policy.run(lambda: client.get_page(cursor), description="page 1", budget=budget)
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .budget import BudgetTracker
from .errors import BudgetExhaustedError, RateLimitedError, UpstreamTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BackoffFn = Callable[[int, BaseException], float]


def exponential_backoff(base: float, cap: float, jitter: bool = True) -> BackoffFn:
    """Delay of base * 2^attempt seconds, capped, with +/-10% jitter.

    attempt is zero-based (0 = the delay after the first failure).
    """
    def _backoff(attempt: int, error: BaseException) -> float:
        delay = min(base * (2 ** attempt), cap)
        if jitter:
            delay *= random.uniform(0.9, 1.1)
        return delay
    return _backoff


def fixed_backoff(seconds: float) -> BackoffFn:
    def _backoff(attempt: int, error: BaseException) -> float:
        return seconds
    return _backoff


def is_transient(error: BaseException) -> bool:
    return isinstance(error, UpstreamTransientError)


@dataclass
class RetryPolicy:
    """Bounded retry with a backoff function and a retryable predicate."""

    max_attempts: int
    backoff: BackoffFn
    retryable: Callable[[BaseException], bool] = is_transient
    # Per-error overrides, e.g. a fixed short delay for 5xx and exponential for 429
    backoff_overrides: list[tuple[type, BackoffFn]] = field(default_factory=list)
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def delay_for(self, attempt: int, error: BaseException) -> float:
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return error.retry_after
        for error_type, backoff in self.backoff_overrides:
            if isinstance(error, error_type):
                return backoff(attempt, error)
        return self.backoff(attempt, error)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        budget: Optional[BudgetTracker] = None,
    ) -> T:
        """Run operation until it succeeds, fails permanently, or attempts run out.

        Each attempt costs one budget unit when a budget is given. Raises
        BudgetExhaustedError when the budget cannot cover the next attempt,
        otherwise re-raises the last error.
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            if budget is not None:
                if not budget.can_afford(1):
                    raise BudgetExhaustedError(
                        f"{description}: budget exhausted after {attempt} attempt(s)"
                    ) from last_error
                budget.consume(1)

            try:
                return await operation()
            except Exception as e:
                if not self.retryable(e):
                    raise
                last_error = e
                if attempt < self.max_attempts - 1:
                    delay = self.delay_for(attempt, e)
                    logger.warning(
                        f"{description} failed (attempt {attempt + 1}/{self.max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await self.sleep(delay)

        logger.error(f"{description} failed after {self.max_attempts} attempts: {last_error}")
        assert last_error is not None
        raise last_error
