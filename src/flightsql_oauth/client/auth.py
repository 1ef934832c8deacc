"""
OAuth2 token providers for Flight SQL connections.

Implements the authorization code flow with PKCE (browser login against the
identity provider, refresh-token reuse) and the server-side flow (the Flight
server's companion OAuth service performs the exchange while the client polls).

用于 Flight SQL 连接的 OAuth2 令牌提供者。
实现了带有 PKCE 的授权码流程，以及由服务端完成令牌交换、客户端轮询结果的服务端流程。
"""

import logging
import webbrowser
from collections.abc import AsyncGenerator, Callable, Generator
from typing import Protocol
from urllib.parse import quote, urlencode

import anyio
import httpx
from pydantic import ValidationError

from flightsql_oauth.client.cache import (
    SharedProviderState,
    TokenCache,
    authorization_code_cache_key,
    get_default_token_cache,
    server_side_cache_key,
)
from flightsql_oauth.client.callback import DEFAULT_CALLBACK_TIMEOUT, LoopbackCallbackServer
from flightsql_oauth.client.pkce import DEFAULT_VERIFIER_LENGTH, PKCEParameters, generate_state
from flightsql_oauth.shared._httpx_utils import OAuthHttpClientFactory, create_oauth_http_client
from flightsql_oauth.shared.auth import InitiateResponse, OAuthErrorResponse, OAuthToken, SessionStatus, TokenInfo
from flightsql_oauth.shared.exceptions import (
    OAuthFlowError,
    OAuthInteractionError,
    OAuthTimeoutError,
    OAuthTokenError,
)

logger = logging.getLogger(__name__)

# 令牌在到期前 30 秒即视为过期
EXPIRATION_BUFFER_SECONDS = 30

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_POLL_TIMEOUT = 300.0

BrowserOpener = Callable[[str], bool]


def open_in_browser(url: str) -> bool:
    """Open ``url`` in the user's default browser. Returns False when no browser is available."""
    try:
        return webbrowser.open(url)
    except webbrowser.Error as e:
        logger.debug(f"webbrowser could not open a browser: {e}")
        return False


def launch_browser(browser_opener: BrowserOpener, url: str) -> None:
    """Open the login page, or fail with a message carrying the URL to open manually."""
    if not browser_opener(url):
        logger.warning(f"Cannot open browser automatically. Please open this URL manually:\n{url}")
        raise OAuthInteractionError(f"Cannot open browser for SSO login. Please open this URL manually: {url}")


def _shared_state(cache: TokenCache | None, key: str) -> SharedProviderState:
    # 空的 TokenCache 在布尔上下文中为假，必须显式判断 None
    if cache is None:
        cache = get_default_token_cache()
    return cache.get_state(key)


class TokenProvider(Protocol):
    """Supplies the bearer token presented to the Flight server."""

    async def get_valid_token(self) -> str:
        """Return a token that will stay valid for at least a short while."""
        ...


class AuthorizationCodeTokenProvider:
    """
    Authorization code flow with PKCE.

    Opens the user's browser at the identity provider, receives the redirect on
    a loopback listener and exchanges the code for tokens. Providers built for
    the same (token endpoint, client id) share one cache entry, so parallel
    connections trigger a single browser login.
    """

    def __init__(
        self,
        authorization_endpoint: str,
        token_endpoint: str,
        client_id: str,
        client_secret: str | None = None,
        scope: str | None = None,
        *,
        cache: TokenCache | None = None,
        browser_opener: BrowserOpener = open_in_browser,
        http_client_factory: OAuthHttpClientFactory = create_oauth_http_client,
        callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        verifier_length: int = DEFAULT_VERIFIER_LENGTH,
    ):
        if not authorization_endpoint:
            raise ValueError("authorization_endpoint cannot be empty")
        if not token_endpoint:
            raise ValueError("token_endpoint cannot be empty")
        if not client_id:
            raise ValueError("client_id cannot be empty")

        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.callback_timeout = callback_timeout
        self.verifier_length = verifier_length
        self._browser_opener = browser_opener
        self._http_client_factory = http_client_factory

        self.cache_key = authorization_code_cache_key(token_endpoint, client_id)
        self._state: SharedProviderState = _shared_state(cache, self.cache_key)

    async def get_valid_token(self) -> str:
        # 快速路径：缓存中的令牌距离过期还有足够时间，无需加锁
        token = self._state.token
        if token is not None and not token.is_expired(EXPIRATION_BUFFER_SECONDS):
            return token.value

        async with self._state.hold():
            # 双重检查：等待锁期间其他线程或任务可能已经拿到了令牌
            token = self._state.token
            if token is not None and not token.is_expired(EXPIRATION_BUFFER_SECONDS):
                return token.value

            # 优先尝试刷新令牌，失败时回退到浏览器登录
            if self._state.refresh_token:
                refreshed = await self._refresh_access_token()
                if refreshed is not None:
                    self._state.token = refreshed
                    return refreshed.value

            new_token = await self._perform_browser_flow()
            self._state.token = new_token
            return new_token.value

    def build_authorization_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        """Authorization request URL (RFC 6749 section 4.1.1 with RFC 7636 parameters)."""
        auth_params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        if self.scope:
            auth_params["scope"] = self.scope

        # 授权端点本身可能已带查询参数（如租户）
        separator = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(auth_params)}"

    async def _perform_browser_flow(self) -> TokenInfo:
        # 每次授权请求都生成新的 PKCE 参数和 state
        pkce_params = PKCEParameters.generate(self.verifier_length)
        state = generate_state()

        try:
            callback_server = LoopbackCallbackServer(expected_state=state)
            callback_server.start()
        except OSError as e:
            raise OAuthFlowError(f"Failed to start OAuth callback server: {e}") from e

        try:
            redirect_uri = callback_server.redirect_uri
            authorization_url = self.build_authorization_url(redirect_uri, state, pkce_params.code_challenge)

            logger.info("Opening browser for SSO login...")
            launch_browser(self._browser_opener, authorization_url)

            auth_code = await callback_server.wait_for_authorization_code(self.callback_timeout)
        finally:
            # 无论成功、失败还是取消，都要关闭回调服务器释放端口
            await callback_server.aclose()

        logger.debug("Received authorization code, exchanging for tokens...")
        return await self._exchange_code(auth_code, redirect_uri, pkce_params.code_verifier)

    def _client_auth_data(self) -> dict[str, str]:
        # client_secret_post；部分 IdP（如 Google）即使是桌面应用也要求 client_secret
        data = {"client_id": self.client_id}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    async def _exchange_code(self, auth_code: str, redirect_uri: str, code_verifier: str) -> TokenInfo:
        token_data = {
            "grant_type": "authorization_code",
            "code": auth_code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            **self._client_auth_data(),
        }
        token_response = await self._request_token(token_data, "Token exchange")
        # 保存 refresh_token，供令牌过期后静默刷新
        if token_response.refresh_token:
            self._state.refresh_token = token_response.refresh_token

        if token_response.id_token:
            logger.info("Successfully obtained ID token via authorization code flow")
        else:
            logger.info("Successfully obtained access token via authorization code flow (no ID token)")
        return TokenInfo.from_token_response(token_response)

    async def _refresh_access_token(self) -> TokenInfo | None:
        """Try the refresh grant. Any failure drops the refresh token and returns None."""
        refresh_data = {
            "grant_type": "refresh_token",
            "refresh_token": self._state.refresh_token or "",
            **self._client_auth_data(),
        }
        if self.scope:
            refresh_data["scope"] = self.scope

        try:
            token_response = await self._request_token(refresh_data, "Token refresh")
        # 刷新失败不向调用方抛出：丢弃 refresh_token，改走浏览器登录
        except OAuthFlowError as e:
            logger.debug(f"Refresh token failed, falling back to browser flow: {e}")
            self._state.refresh_token = None
            return None

        # 服务端未返回新的 refresh_token 时继续使用旧的
        if token_response.refresh_token:
            self._state.refresh_token = token_response.refresh_token
        logger.debug("Successfully refreshed %s", "ID token" if token_response.id_token else "access token")
        return TokenInfo.from_token_response(token_response)

    async def _request_token(self, data: dict[str, str], step: str) -> OAuthToken:
        # 令牌端点使用表单编码（RFC 6749 第 4.1.3 节）
        try:
            async with self._http_client_factory() as client:
                response = await client.post(
                    self.token_endpoint,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise OAuthTokenError(f"{step} request to {self.token_endpoint} failed: {e}") from e

        if response.status_code != 200:
            raise _token_error(step, response)

        try:
            return OAuthToken.model_validate_json(response.content)
        except ValidationError as e:
            raise OAuthTokenError(
                f"{step} failed: invalid token response: {e}", status_code=response.status_code
            ) from e


def _token_error(step: str, response: httpx.Response) -> OAuthTokenError:
    # 优先解析标准错误体（RFC 6749 第 5.2 节），否则附带原始响应内容
    try:
        error_response = OAuthErrorResponse.model_validate_json(response.content)
    except ValidationError:
        return OAuthTokenError(
            f"{step} failed: HTTP {response.status_code}: {response.text}",
            status_code=response.status_code,
        )
    return OAuthTokenError(
        f"{step} failed: {error_response.error} - {error_response.error_description}",
        status_code=response.status_code,
        error=error_response.error,
    )


class ServerSideTokenProvider:
    """
    Server-side (delegated) OAuth flow.

    Calls the companion service's ``/oauth/initiate`` endpoint, opens the
    returned login URL in the browser and polls ``/oauth/token/{uuid}`` until
    the service reports the resulting token. The companion service owns
    refresh, so only the bare token is cached, keyed by the service base URL.
    """

    def __init__(
        self,
        oauth_base_url: str,
        disable_certificate_verification: bool = False,
        *,
        cache: TokenCache | None = None,
        browser_opener: BrowserOpener = open_in_browser,
        http_client_factory: OAuthHttpClientFactory = create_oauth_http_client,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ):
        if not oauth_base_url:
            raise ValueError("oauth_base_url cannot be empty")

        self.oauth_base_url = oauth_base_url.rstrip("/")
        self.disable_certificate_verification = disable_certificate_verification
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._browser_opener = browser_opener
        self._http_client_factory = http_client_factory

        self.cache_key = server_side_cache_key(self.oauth_base_url)
        self._state: SharedProviderState = _shared_state(cache, self.cache_key)

    async def get_valid_token(self) -> str:
        # 服务端令牌没有本地过期时间，缓存命中即直接返回
        token = self._state.token
        if token is not None and not token.is_expired():
            return token.value

        async with self._state.hold():
            # 双重检查，保证同一服务地址只发起一次登录会话
            token = self._state.token
            if token is not None and not token.is_expired():
                return token.value

            value = await self._perform_server_side_flow()
            self._state.token = TokenInfo(value=value)
            return value

    async def _perform_server_side_flow(self) -> str:
        # 整个会话复用同一个客户端；verify 仅在显式关闭证书校验时为 False
        try:
            async with self._http_client_factory(verify=not self.disable_certificate_verification) as client:
                initiate = await self._initiate(client)

                logger.info("Opening browser for server-side SSO login...")
                launch_browser(self._browser_opener, initiate.auth_url)

                logger.info("Waiting for authentication to complete...")
                return await self._poll_for_token(client, initiate.session_uuid)
        except httpx.HTTPError as e:
            raise OAuthFlowError(f"Server-side OAuth authentication failed: {e}") from e

    async def _initiate(self, client: httpx.AsyncClient) -> InitiateResponse:
        response = await client.get(f"{self.oauth_base_url}/oauth/initiate")
        if response.status_code != 200:
            raise OAuthFlowError(f"OAuth initiate failed with status {response.status_code}: {response.text}")
        try:
            return InitiateResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise OAuthFlowError("OAuth initiate response missing session_uuid or auth_url") from e

    async def _poll_for_token(self, client: httpx.AsyncClient, session_uuid: str) -> str:
        poll_url = f"{self.oauth_base_url}/oauth/token/{quote(session_uuid, safe='')}"
        deadline = anyio.current_time() + self.poll_timeout
        # 每次请求前先等待一个间隔，给用户完成登录的时间

        while anyio.current_time() < deadline:
            await anyio.sleep(self.poll_interval)

            response = await client.get(poll_url)
            if response.status_code != 200:
                # 非 200 视为暂时性错误，继续轮询直到超时
                logger.debug(f"OAuth status poll returned HTTP {response.status_code}, retrying")
                continue

            try:
                session_status = SessionStatus.model_validate_json(response.content)
            except ValidationError as e:
                raise OAuthFlowError(f"Invalid OAuth status response: {e}") from e

            if session_status.status == "complete":
                if not session_status.token:
                    raise OAuthTokenError("OAuth server returned complete status but no token")
                logger.info("Server-side OAuth authentication successful")
                return session_status.token
            if session_status.status == "error":
                raise OAuthInteractionError(
                    f"Server-side OAuth authentication failed: {session_status.error or 'unknown error'}",
                    error=session_status.error,
                )
            # status == "pending"：继续轮询

        raise OAuthTimeoutError(f"Server-side OAuth authentication timed out after {self.poll_timeout:g} seconds")


class TokenProviderAuth(httpx.Auth):
    """
    httpx authentication that attaches the provider's token as a bearer credential.
    """

    def __init__(self, provider: TokenProvider):
        self.provider = provider

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("TokenProviderAuth requires an httpx.AsyncClient")

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self.provider.get_valid_token()
        request.headers["Authorization"] = f"Bearer {token}"
        yield request
