from collections.abc import Callable
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from flightsql_oauth.client.cache import TokenCache

Handler = Callable[[httpx.Request], httpx.Response]


class MockHttp:
    """Routes requests by (method, path) and records every request it sees."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[httpx.Response] | Handler] = {}
        self.requests: list[httpx.Request] = []
        self.verify_flags: list[bool] = []

    def add(self, method: str, path: str, *responses: httpx.Response | Handler) -> None:
        if len(responses) == 1 and callable(responses[0]):
            self.routes[(method, path)] = responses[0]
        else:
            self.routes[(method, path)] = list(responses)  # type: ignore[arg-type]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not_found"})
        if callable(route):
            return route(request)
        # 最后一个响应会被重复使用
        return route.pop(0) if len(route) > 1 else route[0]

    def factory(self, timeout: httpx.Timeout | None = None, verify: bool = True) -> httpx.AsyncClient:
        self.verify_flags.append(verify)
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _approve(query: dict[str, str]) -> dict[str, str] | None:
    # 服务端流程的登录地址没有 state，也没有回调地址
    if "state" not in query or "redirect_uri" not in query:
        return None
    return {"code": "abc123", "state": query["state"]}


class FakeBrowser:
    """
    Browser opener that follows the authorization URL straight to the loopback callback.

    ``callback_params`` receives the parsed authorization query and returns the
    query sent to ``redirect_uri``; return None to never call back.
    """

    def __init__(self, callback_params: Callable[[dict[str, str]], dict[str, str] | None] | None = None) -> None:
        self.urls: list[str] = []
        self.callback_responses: list[httpx.Response] = []
        self._callback_params = callback_params or _approve

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        query = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        params = self._callback_params(query)
        if params is not None and "redirect_uri" in query:
            self.callback_responses.append(httpx.get(query["redirect_uri"], params=params, trust_env=False))
        return True


@pytest.fixture
def mock_http() -> MockHttp:
    return MockHttp()


@pytest.fixture
def token_cache() -> TokenCache:
    return TokenCache()


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()
