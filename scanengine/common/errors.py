"""
Exception hierarchy for the scan engine.

Transient upstream errors are retried by a RetryPolicy; permanent ones abort
the current call. Budget exhaustion and insufficient credits are expected
outcomes: callers convert them into skip lists and rejection results.
"""

from typing import Optional


class ScanEngineError(Exception):
    """Base class for scan engine errors."""
    pass


class UpstreamError(ScanEngineError):
    """Raised when an external provider call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamTransientError(UpstreamError):
    """Rate limit, timeout, overload or network failure. Safe to retry."""
    pass


class RateLimitedError(UpstreamTransientError):
    """Provider answered 429. retry_after is in seconds when the provider sent one."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class UpstreamPermanentError(UpstreamError):
    """Auth failure, malformed request or unavailable resource. Never retried."""
    pass


class AnalysisAbortedError(UpstreamPermanentError):
    """The analysis provider rejected the request; the whole job is abandoned."""
    pass


class BudgetExhaustedError(ScanEngineError):
    """The per-invocation budget cannot cover another outbound call."""
    pass


class ProfileNotFoundError(ScanEngineError):
    """No ledger profile exists for the tenant."""
    pass


class WebhookSignatureError(ScanEngineError):
    """Webhook payload failed HMAC verification."""
    pass


class WebhookPayloadError(ScanEngineError):
    """Webhook payload is not a valid event document."""
    pass


class FulfillmentError(ScanEngineError):
    """Credits for a confirmed payment could not be granted. The provider should redeliver."""
    pass


class CheckoutOwnershipError(ScanEngineError):
    """A checkout session was verified by a tenant other than the one who created it."""
    pass
