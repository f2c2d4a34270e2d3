"""
Shared HTTP client configuration for provider clients.

Usage:
    from scanengine.common.http_client import create_provider_client

    client = create_provider_client(
        base_url=settings.content_api_base_url,
        timeout=settings.content_fetch_timeout,
        extra_headers={"X-API-Key": settings.content_api_key},
    )
"""

import httpx
from typing import Optional

from ..config.settings import settings


USER_AGENT = "ScanEngine/1.0 (scheduled signal scans)"


def create_provider_client(
    base_url: str = "",
    timeout: Optional[float] = None,
    max_connections: int = 20,
    max_keepalive: int = 10,
    extra_headers: Optional[dict] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create a standardized async HTTP client for an external provider.

    Args:
        base_url: Provider API root
        timeout: Per-request timeout in seconds (default: settings.content_fetch_timeout)
        max_connections: Maximum concurrent connections
        max_keepalive: Maximum keepalive connections
        extra_headers: Additional headers (auth keys, accept)
        transport: Optional transport override (httpx.MockTransport in tests)

    Returns:
        Configured httpx.AsyncClient
    """
    headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    if extra_headers:
        headers.update(extra_headers)

    return httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout or settings.content_fetch_timeout,
        headers=headers,
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive,
        ),
        follow_redirects=True,
        transport=transport,
    )
