"""
Flight client middleware that captures the server-advertised OAuth URL.

When the client performs a handshake with the sentinel username
``__discover__``, the server answers with the base URL of its OAuth HTTP service
in the ``x-gizmosql-oauth-url`` response header. The factory keeps the last
value it saw so the configuration resolver can point the delegated flow at it.

The factory follows the ``start_call`` / ``received_headers`` shape of Flight
client middleware, and can also be attached to an httpx client as a response
event hook.
"""

import base64
import logging
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

logger = logging.getLogger(__name__)

OAUTH_URL_HEADER = "x-gizmosql-oauth-url"
DISCOVERY_USERNAME = "__discover__"


def discovery_handshake_headers(password: str = "") -> dict[str, str]:
    """Basic authorization header for the discovery handshake."""
    credentials = f"{DISCOVERY_USERNAME}:{password}".encode()
    return {"authorization": "Basic " + base64.b64encode(credentials).decode("ascii")}


def _header_value(headers: Mapping[str, Any], name: str) -> str | None:
    # Flight 头部的值是列表，httpx 的是字符串；键名大小写不敏感
    for key, value in headers.items():
        key_str = key.decode() if isinstance(key, bytes) else str(key)
        if key_str.lower() != name:
            continue
        if isinstance(value, bytes):
            return value.decode()
        if isinstance(value, str):
            return value
        if isinstance(value, Iterable):
            for item in value:
                return item.decode() if isinstance(item, bytes) else str(item)
        return None
    return None


class OAuthDiscoveryMiddleware:
    """Per-call middleware; only ``received_headers`` does anything."""

    def __init__(self, factory: "OAuthDiscoveryMiddlewareFactory") -> None:
        self._factory = factory

    def sending_headers(self) -> dict[str, str]:
        return {}

    def received_headers(self, headers: Mapping[str, Any]) -> None:
        url = _header_value(headers, OAUTH_URL_HEADER)
        if url:
            self._factory.set_discovered_oauth_url(url)

    def call_completed(self, exception: BaseException | None) -> None:
        pass


class OAuthDiscoveryMiddlewareFactory:
    """Creates a middleware per call and owns the discovered OAuth URL."""

    def __init__(self) -> None:
        self._discovered_oauth_url: str | None = None

    def start_call(self, info: Any = None) -> OAuthDiscoveryMiddleware:
        return OAuthDiscoveryMiddleware(self)

    @property
    def discovered_oauth_url(self) -> str | None:
        """The URL advertised by the server, or ``None`` before discovery."""
        return self._discovered_oauth_url

    def set_discovered_oauth_url(self, url: str) -> None:
        logger.debug(f"Server advertised OAuth URL {url}")
        self._discovered_oauth_url = url

    async def httpx_response_hook(self, response: httpx.Response) -> None:
        """Response event hook: ``httpx.AsyncClient(event_hooks={"response": [factory.httpx_response_hook]})``."""
        self.start_call().received_headers(response.headers)
