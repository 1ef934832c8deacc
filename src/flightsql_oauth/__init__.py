from flightsql_oauth.client import (
    AuthorizationCodeTokenProvider,
    OAuthConfiguration,
    OAuthDiscoveryMiddlewareFactory,
    ServerSideTokenProvider,
    TokenCache,
    TokenProvider,
)
from flightsql_oauth.shared.auth import TokenInfo
from flightsql_oauth.shared.exceptions import (
    OAuthConfigurationError,
    OAuthDiscoveryError,
    OAuthFlowError,
    OAuthInteractionError,
    OAuthTimeoutError,
    OAuthTokenError,
)

__all__ = [
    "AuthorizationCodeTokenProvider",
    "OAuthConfiguration",
    "OAuthConfigurationError",
    "OAuthDiscoveryError",
    "OAuthDiscoveryMiddlewareFactory",
    "OAuthFlowError",
    "OAuthInteractionError",
    "OAuthTimeoutError",
    "OAuthTokenError",
    "ServerSideTokenProvider",
    "TokenCache",
    "TokenInfo",
    "TokenProvider",
]
