"""
OpenID Connect discovery: resolve authorization and token endpoints from an issuer.
"""

import logging
from dataclasses import dataclass

import httpx
from pydantic import ValidationError

from flightsql_oauth.shared._httpx_utils import OAuthHttpClientFactory, create_oauth_http_client
from flightsql_oauth.shared.auth import OIDCProviderMetadata
from flightsql_oauth.shared.exceptions import OAuthConfigurationError, OAuthDiscoveryError

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


@dataclass(frozen=True)
class OIDCEndpoints:
    """Endpoints resolved from a discovery document, exactly as published."""

    authorization_endpoint: str
    token_endpoint: str


def build_discovery_url(issuer_url: str) -> str:
    """Issuer URL with any trailing slash removed, plus the well-known path."""
    return issuer_url.rstrip("/") + WELL_KNOWN_PATH


async def discover_oidc_endpoints(
    issuer_url: str,
    *,
    http_client_factory: OAuthHttpClientFactory = create_oauth_http_client,
) -> OIDCEndpoints:
    """
    Fetch ``<issuer>/.well-known/openid-configuration`` and return its endpoints.

    One network fetch per call, no caching; callers keep the result if they
    need it again.

    Raises:
        OAuthConfigurationError: the document lacks ``authorization_endpoint``
            or ``token_endpoint``.
        OAuthDiscoveryError: the document could not be fetched or parsed.
    """
    url = build_discovery_url(issuer_url)
    logger.debug(f"Fetching OIDC discovery document from {url}")

    try:
        async with http_client_factory() as client:
            response = await client.get(url, headers={"Accept": "application/json"})
    except httpx.HTTPError as e:
        raise OAuthDiscoveryError(
            f"Failed to connect to OIDC issuer at {issuer_url}: {e}", issuer_url=issuer_url
        ) from e

    if response.status_code != 200:
        raise OAuthDiscoveryError(
            f"Failed to fetch OIDC discovery document from {issuer_url}: HTTP {response.status_code}",
            issuer_url=issuer_url,
            status_code=response.status_code,
        )

    try:
        metadata = OIDCProviderMetadata.model_validate_json(response.content)
    except ValidationError as e:
        raise OAuthDiscoveryError(
            f"Invalid OIDC discovery document from {issuer_url}: {e}",
            issuer_url=issuer_url,
            status_code=response.status_code,
        ) from e

    # 两个端点都是授权码流程的必需项
    authorization_endpoint = metadata.authorization_endpoint
    token_endpoint = metadata.token_endpoint
    if not authorization_endpoint:
        raise _missing_endpoint(issuer_url, "authorization_endpoint")
    if not token_endpoint:
        raise _missing_endpoint(issuer_url, "token_endpoint")

    return OIDCEndpoints(authorization_endpoint=authorization_endpoint, token_endpoint=token_endpoint)


def _missing_endpoint(issuer_url: str, field_name: str) -> OAuthConfigurationError:
    return OAuthConfigurationError(
        f"OIDC discovery document from {issuer_url} missing {field_name}",
        setting="oidc_issuer",
        missing_field=field_name,
    )
