"""
OAuth settings for a connection and the choice of token provider.
"""

import logging
from dataclasses import dataclass, replace
from typing import cast
from urllib.parse import urlparse

from flightsql_oauth.client.auth import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_POLL_TIMEOUT,
    AuthorizationCodeTokenProvider,
    BrowserOpener,
    ServerSideTokenProvider,
    TokenProvider,
    open_in_browser,
)
from flightsql_oauth.client.cache import TokenCache
from flightsql_oauth.client.callback import DEFAULT_CALLBACK_TIMEOUT
from flightsql_oauth.client.discovery import discover_oidc_endpoints
from flightsql_oauth.client.middleware import OAuthDiscoveryMiddlewareFactory
from flightsql_oauth.shared._httpx_utils import OAuthHttpClientFactory, create_oauth_http_client
from flightsql_oauth.shared.exceptions import OAuthConfigurationError

logger = logging.getLogger(__name__)

AUTHORIZATION_CODE_FLOW = "authorization_code"
SERVER_SIDE_FLOW = "server_side"

# 用户友好的流程名称映射
_FLOW_ALIASES = {
    "authorization_code": AUTHORIZATION_CODE_FLOW,
    "authorization-code": AUTHORIZATION_CODE_FLOW,
    "server_side": SERVER_SIDE_FLOW,
    "server-side": SERVER_SIDE_FLOW,
    "serverside": SERVER_SIDE_FLOW,
}


def normalize_flow(flow: str | None) -> str:
    if not flow:
        raise OAuthConfigurationError("OAuth flow cannot be null or empty", setting="flow")
    normalized = _FLOW_ALIASES.get(flow.strip().lower())
    if normalized is None:
        raise OAuthConfigurationError(f"Unsupported OAuth flow: {flow}", setting="flow")
    return normalized


def _validate_url(value: str | None, setting: str) -> None:
    if not value:
        return
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise OAuthConfigurationError(f"Invalid {setting}: {value}", setting=setting)


@dataclass(frozen=True)
class OAuthConfiguration:
    """
    OAuth settings consumed from the connection layer.

    ``authorization_code`` needs ``client_id`` plus either ``token_uri`` (with
    ``authorization_url``) or ``oidc_issuer`` for discovery. ``server_side``
    needs only ``oauth_server_url``.
    """

    flow: str = SERVER_SIDE_FLOW
    token_uri: str | None = None
    authorization_url: str | None = None
    oidc_issuer: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = None
    oauth_server_url: str | None = None
    disable_certificate_verification: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "flow", normalize_flow(self.flow))
        self.validate()

    def validate(self) -> None:
        if self.flow == AUTHORIZATION_CODE_FLOW:
            if not self.client_id:
                raise OAuthConfigurationError("client_id is required for authorization_code flow", setting="client_id")
            if not self.token_uri and not self.oidc_issuer:
                raise OAuthConfigurationError(
                    "Either token_uri+authorization_url or oidc_issuer is required for authorization_code flow",
                    setting="token_uri",
                )
            _validate_url(self.token_uri, "token_uri")
            _validate_url(self.authorization_url, "authorization_url")
            _validate_url(self.oidc_issuer, "oidc_issuer")
        else:
            if not self.oauth_server_url:
                raise OAuthConfigurationError(
                    "oauth_server_url is required for server_side flow", setting="oauth_server_url"
                )
            _validate_url(self.oauth_server_url, "oauth_server_url")

    @classmethod
    def from_discovery(
        cls,
        discovery: OAuthDiscoveryMiddlewareFactory,
        disable_certificate_verification: bool = False,
    ) -> "OAuthConfiguration":
        """Server-side configuration pointing at the URL the server advertised during the handshake."""
        url = discovery.discovered_oauth_url
        if not url:
            raise OAuthConfigurationError(
                "The server did not advertise an OAuth URL during the discovery handshake",
                setting="oauth_server_url",
            )
        return cls(
            flow=SERVER_SIDE_FLOW,
            oauth_server_url=url,
            disable_certificate_verification=disable_certificate_verification,
        )

    def with_discovered_url(self, discovery: OAuthDiscoveryMiddlewareFactory | None) -> "OAuthConfiguration":
        """Return a copy whose server-side URL is the discovered one, when there is one."""
        if discovery is None or self.flow != SERVER_SIDE_FLOW:
            return self
        url = discovery.discovered_oauth_url
        if not url or url == self.oauth_server_url:
            return self
        logger.debug(f"Using server-advertised OAuth URL {url} instead of {self.oauth_server_url}")
        return replace(self, oauth_server_url=url)

    async def create_token_provider(
        self,
        *,
        cache: TokenCache | None = None,
        discovery: OAuthDiscoveryMiddlewareFactory | None = None,
        browser_opener: BrowserOpener = open_in_browser,
        http_client_factory: OAuthHttpClientFactory = create_oauth_http_client,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> TokenProvider:
        """
        Build the token provider for this configuration.

        For ``authorization_code`` any endpoint not given explicitly is
        resolved through OIDC discovery on ``oidc_issuer``.
        """
        config = self.with_discovered_url(discovery)

        if config.flow == SERVER_SIDE_FLOW:
            # __post_init__ 已校验 server_side 流程必须提供 oauth_server_url
            return ServerSideTokenProvider(
                cast(str, config.oauth_server_url),
                config.disable_certificate_verification,
                cache=cache,
                browser_opener=browser_opener,
                http_client_factory=http_client_factory,
                poll_interval=poll_interval,
                poll_timeout=poll_timeout,
            )

        authorization_endpoint = config.authorization_url
        token_endpoint = config.token_uri
        if (not authorization_endpoint or not token_endpoint) and config.oidc_issuer:
            endpoints = await discover_oidc_endpoints(config.oidc_issuer, http_client_factory=http_client_factory)
            authorization_endpoint = authorization_endpoint or endpoints.authorization_endpoint
            token_endpoint = token_endpoint or endpoints.token_endpoint

        if not authorization_endpoint:
            raise OAuthConfigurationError(
                "Authorization endpoint could not be determined. Set authorization_url or oidc_issuer.",
                setting="authorization_url",
            )
        if not token_endpoint:
            raise OAuthConfigurationError(
                "Token endpoint could not be determined. Set token_uri or oidc_issuer.",
                setting="token_uri",
            )

        # client_id 同样已在 __post_init__ 中校验
        return AuthorizationCodeTokenProvider(
            authorization_endpoint,
            token_endpoint,
            cast(str, config.client_id),
            config.client_secret,
            config.scope,
            cache=cache,
            browser_opener=browser_opener,
            http_client_factory=http_client_factory,
            callback_timeout=callback_timeout,
        )
