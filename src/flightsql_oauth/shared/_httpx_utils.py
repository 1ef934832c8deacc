"""Utilities for creating the httpx clients used by the OAuth flows."""

from typing import Protocol

import httpx

__all__ = ["OAuthHttpClientFactory", "create_oauth_http_client"]

# 默认 HTTP 超时（秒）
DEFAULT_HTTP_TIMEOUT = 10.0


class OAuthHttpClientFactory(Protocol):
    def __call__(
        self,
        timeout: httpx.Timeout | None = None,
        verify: bool = True,
    ) -> httpx.AsyncClient: ...


def create_oauth_http_client(
    timeout: httpx.Timeout | None = None,
    verify: bool = True,
) -> httpx.AsyncClient:
    """Create a standardized httpx AsyncClient for identity-provider calls.

    Redirects are always followed, and the timeout defaults to 10 seconds.

    Args:
        timeout: Request timeout as httpx.Timeout object.
        verify: Whether to verify TLS certificates. Only the delegated flow
            ever turns this off, for servers with self-signed certificates.

    Returns:
        Configured httpx.AsyncClient instance. Use it as an async context
        manager so the connection pool is closed.

    Example:
        async with create_oauth_http_client() as client:
            response = await client.get("https://idp.example/.well-known/openid-configuration")
    """
    if timeout is None:
        timeout = httpx.Timeout(DEFAULT_HTTP_TIMEOUT)
    return httpx.AsyncClient(follow_redirects=True, verify=verify, timeout=timeout)
