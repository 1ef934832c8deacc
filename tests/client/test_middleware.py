import base64

import httpx
import pytest

from flightsql_oauth.client.middleware import (
    DISCOVERY_USERNAME,
    OAUTH_URL_HEADER,
    OAuthDiscoveryMiddlewareFactory,
    discovery_handshake_headers,
)


def test_nothing_discovered_initially():
    assert OAuthDiscoveryMiddlewareFactory().discovered_oauth_url is None


def test_flight_style_list_header_is_captured():
    factory = OAuthDiscoveryMiddlewareFactory()
    middleware = factory.start_call(info=None)

    assert middleware.sending_headers() == {}
    middleware.received_headers({OAUTH_URL_HEADER: ["https://flight.example:31339"]})
    middleware.call_completed(None)

    assert factory.discovered_oauth_url == "https://flight.example:31339"


def test_header_name_is_case_insensitive_and_bytes_accepted():
    factory = OAuthDiscoveryMiddlewareFactory()
    factory.start_call().received_headers({b"X-GizmoSQL-OAuth-URL": [b"http://flight.example:31339"]})

    assert factory.discovered_oauth_url == "http://flight.example:31339"


def test_empty_or_absent_header_is_ignored():
    factory = OAuthDiscoveryMiddlewareFactory()
    factory.start_call().received_headers({OAUTH_URL_HEADER: "https://first.example"})
    factory.start_call().received_headers({OAUTH_URL_HEADER: [""]})
    factory.start_call().received_headers({OAUTH_URL_HEADER: []})
    factory.start_call().received_headers({"content-type": ["application/grpc"]})

    assert factory.discovered_oauth_url == "https://first.example"


def test_last_write_wins():
    factory = OAuthDiscoveryMiddlewareFactory()
    factory.start_call().received_headers({OAUTH_URL_HEADER: "https://first.example"})
    factory.start_call().received_headers({OAUTH_URL_HEADER: "https://second.example"})

    assert factory.discovered_oauth_url == "https://second.example"


def test_discovery_handshake_headers_use_sentinel_username():
    header = discovery_handshake_headers()["authorization"]
    assert header.startswith("Basic ")
    assert base64.b64decode(header.removeprefix("Basic ")).decode() == f"{DISCOVERY_USERNAME}:"


@pytest.mark.anyio
async def test_httpx_response_hook():
    factory = OAuthDiscoveryMiddlewareFactory()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={OAUTH_URL_HEADER: "https://flight.example:31339"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        event_hooks={"response": [factory.httpx_response_hook]},
    ) as client:
        await client.get("https://flight.example/handshake", headers=discovery_handshake_headers())

    assert factory.discovered_oauth_url == "https://flight.example:31339"
