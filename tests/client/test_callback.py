"""Tests for the loopback redirect listener."""

from urllib.parse import urlparse

import anyio
import httpx
import pytest

from flightsql_oauth.client.callback import (
    CALLBACK_PATH,
    CallbackErrorKind,
    CallbackOutcome,
    ListenerStatus,
    LoopbackCallbackServer,
    validate_callback,
)
from flightsql_oauth.shared.exceptions import OAuthInteractionError, OAuthTimeoutError


def get(url: str, **params: str) -> httpx.Response:
    return httpx.get(url, params=params, trust_env=False)


class TestValidateCallback:
    def test_provider_error_checked_before_state(self):
        outcome = validate_callback({"error": ["access_denied"], "state": ["other"]}, "expected")
        assert outcome.error_kind is CallbackErrorKind.PROVIDER_ERROR
        assert outcome.error == "access_denied"
        assert outcome.error_description is None

    def test_state_mismatch(self):
        outcome = validate_callback({"code": ["abc"], "state": ["X"]}, "Y")
        assert outcome.error_kind is CallbackErrorKind.STATE_MISMATCH
        assert outcome.code is None

    def test_missing_state(self):
        outcome = validate_callback({"code": ["abc"]}, "Y")
        assert outcome.error_kind is CallbackErrorKind.STATE_MISMATCH

    def test_empty_code(self):
        outcome = validate_callback({"code": [""], "state": ["Y"]}, "Y")
        assert outcome.error_kind is CallbackErrorKind.MISSING_CODE

    def test_success(self):
        outcome = validate_callback({"code": ["abc"], "state": ["Y"]}, "Y")
        assert outcome.success
        assert outcome.code == "abc"


class TestCallbackOutcome:
    def test_provider_error_exception_carries_details(self):
        exc = CallbackOutcome(
            error_kind=CallbackErrorKind.PROVIDER_ERROR, error="access_denied", error_description="User said no"
        ).to_exception()
        assert isinstance(exc, OAuthInteractionError)
        assert exc.error == "access_denied"
        assert "access_denied - User said no" in str(exc)

    def test_timeout_exception(self):
        exc = CallbackOutcome(error_kind=CallbackErrorKind.TIMEOUT, error_description="waited 5 seconds").to_exception()
        assert isinstance(exc, OAuthTimeoutError)
        assert "try connecting again" in str(exc)


class TestLoopbackCallbackServer:
    def test_redirect_uri_uses_loopback_address(self):
        with LoopbackCallbackServer(expected_state="s") as server:
            parsed = urlparse(server.redirect_uri)
            assert parsed.scheme == "http"
            assert parsed.hostname == "127.0.0.1"
            assert parsed.port == server.port
            assert parsed.port > 0
            assert parsed.path == CALLBACK_PATH
            assert server.status is ListenerStatus.LISTENING

    def test_status_before_start(self):
        server = LoopbackCallbackServer(expected_state="s")
        assert server.status is ListenerStatus.CREATED
        with pytest.raises(RuntimeError):
            server.redirect_uri

    @pytest.mark.anyio
    async def test_valid_callback_yields_code(self):
        with LoopbackCallbackServer(expected_state="Y") as server:
            response = get(server.redirect_uri, code="abc123", state="Y")

            assert response.status_code == 200
            assert "Login Successful" in response.text
            assert await server.wait_for_authorization_code(timeout=5) == "abc123"
            assert server.status is ListenerStatus.COMPLETED

    @pytest.mark.anyio
    async def test_state_mismatch_is_failure_not_code(self):
        with LoopbackCallbackServer(expected_state="Y") as server:
            response = get(server.redirect_uri, code="abc123", state="X")
            outcome = await server.wait_for_outcome(timeout=5)

        assert response.status_code == 400
        assert outcome.error_kind is CallbackErrorKind.STATE_MISMATCH
        assert outcome.code is None

    @pytest.mark.anyio
    async def test_provider_error_is_reported(self):
        with LoopbackCallbackServer(expected_state="Y") as server:
            response = get(server.redirect_uri, error="access_denied", error_description="<denied>")

            with pytest.raises(OAuthInteractionError) as exc_info:
                await server.wait_for_authorization_code(timeout=5)

        assert response.status_code == 400
        assert "access_denied" in response.text
        assert "&lt;denied&gt;" in response.text
        assert exc_info.value.error == "access_denied"
        assert exc_info.value.error_description == "<denied>"

    @pytest.mark.anyio
    async def test_missing_code(self):
        with LoopbackCallbackServer(expected_state="Y") as server:
            get(server.redirect_uri, state="Y")
            outcome = await server.wait_for_outcome(timeout=5)

        assert outcome.error_kind is CallbackErrorKind.MISSING_CODE

    def test_only_first_callback_counts(self):
        with LoopbackCallbackServer(expected_state="Y") as server:
            first = get(server.redirect_uri, code="first", state="Y")
            second = get(server.redirect_uri, code="second", state="Y")

            assert first.status_code == 200
            assert second.status_code == 404
            assert server.outcome == CallbackOutcome(code="first")

    def test_other_paths_do_not_resolve(self):
        with LoopbackCallbackServer(expected_state="Y") as server:
            response = get(f"http://127.0.0.1:{server.port}/favicon.ico")

            assert response.status_code == 404
            assert server.outcome is None

    @pytest.mark.anyio
    async def test_timeout(self):
        with LoopbackCallbackServer(expected_state="Y") as server:
            outcome = await server.wait_for_outcome(timeout=0.1)
            assert outcome.error_kind is CallbackErrorKind.TIMEOUT
            assert server.status is ListenerStatus.TIMED_OUT

            # 超时之后到达的回调不会改变结果
            assert get(server.redirect_uri, code="late", state="Y").status_code == 404
            with pytest.raises(OAuthTimeoutError, match="try connecting again"):
                await server.wait_for_authorization_code(timeout=0.1)

    def test_socket_released_on_exit(self):
        with LoopbackCallbackServer(expected_state="Y") as server:
            redirect_uri = server.redirect_uri

        with pytest.raises(httpx.ConnectError):
            get(redirect_uri, code="abc", state="Y")

    def test_socket_released_when_body_raises(self):
        with pytest.raises(ValueError):
            with LoopbackCallbackServer(expected_state="Y") as server:
                redirect_uri = server.redirect_uri
                raise ValueError("boom")

        with pytest.raises(httpx.ConnectError):
            get(redirect_uri, code="abc", state="Y")

    def test_stop_is_idempotent(self):
        server = LoopbackCallbackServer(expected_state="Y")
        server.start()
        server.stop()
        server.stop()

    @pytest.mark.anyio
    async def test_aclose_wakes_pending_wait(self):
        server = LoopbackCallbackServer(expected_state="Y")
        server.start()
        redirect_uri = server.redirect_uri

        async def close_soon() -> None:
            await anyio.sleep(0.1)
            await server.aclose()

        async with anyio.create_task_group() as tg:
            tg.start_soon(close_soon)
            with anyio.fail_after(5):
                outcome = await server.wait_for_outcome(timeout=30)

        assert outcome.error_kind is CallbackErrorKind.TIMEOUT
        assert outcome.error_description == "callback server closed"
        with pytest.raises(httpx.ConnectError):
            get(redirect_uri, code="abc", state="Y")
