from flightsql_oauth.client.auth import (
    AuthorizationCodeTokenProvider,
    BrowserOpener,
    ServerSideTokenProvider,
    TokenProvider,
    TokenProviderAuth,
    open_in_browser,
)
from flightsql_oauth.client.cache import TokenCache, get_default_token_cache
from flightsql_oauth.client.callback import CallbackErrorKind, CallbackOutcome, LoopbackCallbackServer
from flightsql_oauth.client.config import OAuthConfiguration
from flightsql_oauth.client.discovery import OIDCEndpoints, discover_oidc_endpoints
from flightsql_oauth.client.middleware import OAuthDiscoveryMiddleware, OAuthDiscoveryMiddlewareFactory
from flightsql_oauth.client.pkce import PKCEParameters

__all__ = [
    "AuthorizationCodeTokenProvider",
    "BrowserOpener",
    "CallbackErrorKind",
    "CallbackOutcome",
    "LoopbackCallbackServer",
    "OAuthConfiguration",
    "OAuthDiscoveryMiddleware",
    "OAuthDiscoveryMiddlewareFactory",
    "OIDCEndpoints",
    "PKCEParameters",
    "ServerSideTokenProvider",
    "TokenCache",
    "TokenProvider",
    "TokenProviderAuth",
    "discover_oidc_endpoints",
    "get_default_token_cache",
    "open_in_browser",
]
