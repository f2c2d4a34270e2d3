"""
Common utilities and shared modules.
"""

from .budget import BudgetTracker
from .errors import (
    ScanEngineError,
    UpstreamError,
    UpstreamTransientError,
    UpstreamPermanentError,
    RateLimitedError,
    AnalysisAbortedError,
    BudgetExhaustedError,
    ProfileNotFoundError,
    WebhookSignatureError,
    WebhookPayloadError,
    FulfillmentError,
    CheckoutOwnershipError,
)
from .http_client import create_provider_client, USER_AGENT
from .retry import RetryPolicy, exponential_backoff, fixed_backoff

__all__ = [
    # Budget
    "BudgetTracker",
    # Errors
    "ScanEngineError",
    "UpstreamError",
    "UpstreamTransientError",
    "UpstreamPermanentError",
    "RateLimitedError",
    "AnalysisAbortedError",
    "BudgetExhaustedError",
    "ProfileNotFoundError",
    "WebhookSignatureError",
    "WebhookPayloadError",
    "FulfillmentError",
    "CheckoutOwnershipError",
    # HTTP + retry
    "create_provider_client",
    "USER_AGENT",
    "RetryPolicy",
    "exponential_backoff",
    "fixed_backoff",
]
