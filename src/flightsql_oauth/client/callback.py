"""
Loopback redirect listener for the authorization code flow.

A short-lived HTTP server bound to 127.0.0.1 on an OS-assigned port. It accepts
exactly one redirect on ``/callback``, validates it against the ``state`` sent
with the authorization request and resolves a single ``CallbackOutcome``.
"""

import html
import logging
import secrets
import threading
from dataclasses import dataclass
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from types import TracebackType
from urllib.parse import parse_qs, urlparse

import anyio
from anyio import to_thread

from flightsql_oauth.shared.exceptions import OAuthFlowError, OAuthInteractionError, OAuthTimeoutError

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/callback"
DEFAULT_CALLBACK_TIMEOUT = 120.0

SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
  <title>Login Successful</title>
  <style>
    body{font-family:system-ui,sans-serif;display:flex;justify-content:center;align-items:center;
      height:100vh;margin:0;background:#f0f9ff}
    .card{background:white;padding:2rem;border-radius:8px;box-shadow:0 2px 10px rgba(0,0,0,0.1);
      text-align:center;max-width:400px}
    h1{color:#059669;margin-bottom:0.5rem}
    p{color:#6b7280}
  </style>
</head>
<body>
  <div class="card">
    <h1>Login Successful</h1>
    <p>You can close this window and return to your application.</p>
  </div>
  <script>setTimeout(() => window.close(), 2000);</script>
</body>
</html>
"""

FAILURE_HTML = """<!DOCTYPE html>
<html>
<head><title>Login Failed</title></head>
<body>
  <h1>Login Failed</h1>
  <p>{message}</p>
  <p>You can close this window and return to your application.</p>
</body>
</html>
"""


class CallbackErrorKind(str, Enum):
    PROVIDER_ERROR = "provider_error"
    STATE_MISMATCH = "state_mismatch"
    MISSING_CODE = "missing_code"
    TIMEOUT = "timeout"


class ListenerStatus(str, Enum):
    CREATED = "created"
    LISTENING = "listening"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class CallbackOutcome:
    """The single terminal value of a listener: an authorization code or a failure."""

    code: str | None = None
    error_kind: CallbackErrorKind | None = None
    error: str | None = None
    error_description: str | None = None

    @property
    def success(self) -> bool:
        return self.error_kind is None and bool(self.code)

    def to_exception(self) -> OAuthFlowError:
        """Translate a failed outcome into the error raised to the caller."""
        if self.error_kind is CallbackErrorKind.PROVIDER_ERROR:
            return OAuthInteractionError(
                f"OAuth authorization failed: {self.error} - {self.error_description or 'Unknown error'}",
                error=self.error,
                error_description=self.error_description,
            )
        if self.error_kind is CallbackErrorKind.STATE_MISMATCH:
            return OAuthInteractionError(
                "OAuth callback state mismatch (possible CSRF attack)",
                error=CallbackErrorKind.STATE_MISMATCH.value,
            )
        if self.error_kind is CallbackErrorKind.TIMEOUT:
            return OAuthTimeoutError(
                f"Timed out waiting for browser login ({self.error_description}). Please try connecting again."
            )
        return OAuthInteractionError(
            "No authorization code in OAuth callback",
            error=CallbackErrorKind.MISSING_CODE.value,
        )


def validate_callback(params: dict[str, list[str]], expected_state: str) -> CallbackOutcome:
    """
    Validate redirect query parameters, in order: provider error, state, code.
    """
    # 1. 身份提供方返回的错误优先
    error = _first(params, "error")
    if error is not None:
        return CallbackOutcome(
            error_kind=CallbackErrorKind.PROVIDER_ERROR,
            error=error,
            error_description=_first(params, "error_description"),
        )

    # 2. state 必须与发起请求时一致，防止 CSRF
    state = _first(params, "state")
    if state is None or not secrets.compare_digest(state.encode(), expected_state.encode()):
        return CallbackOutcome(error_kind=CallbackErrorKind.STATE_MISMATCH, error="Invalid state parameter.")

    # 3. 最后检查授权码
    code = _first(params, "code")
    if not code:
        return CallbackOutcome(error_kind=CallbackErrorKind.MISSING_CODE, error="No authorization code received.")

    return CallbackOutcome(code=code)


def _first(params: dict[str, list[str]], name: str) -> str | None:
    values = params.get(name)
    return values[0] if values else None


class CallbackHandler(BaseHTTPRequestHandler):
    """Handles the redirect request sent by the browser."""

    def __init__(self, request, client_address, server, listener: "LoopbackCallbackServer"):
        self.listener = listener
        super().__init__(request, client_address, server)

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path != CALLBACK_PATH or self.listener.outcome is not None:
            # 只处理第一次回调，其余请求（如 favicon）一律 404
            self.send_error(404, "Not Found")
            return

        # 保留空值，空的 code 按缺失处理
        params = parse_qs(parsed.query, keep_blank_values=True)
        outcome = validate_callback(params, self.listener.expected_state)
        if not self.listener.resolve(outcome):
            self.send_error(404, "Not Found")
            return

        if outcome.success:
            self._send_html(200, SUCCESS_HTML)
        elif outcome.error_kind is CallbackErrorKind.PROVIDER_ERROR:
            message = f"{outcome.error}: {outcome.error_description or 'Unknown error'}"
            self._send_html(400, FAILURE_HTML.format(message=html.escape(message)))
        else:
            self._send_html(400, FAILURE_HTML.format(message=html.escape(outcome.error or "")))

    def _send_html(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=UTF-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        # 不输出到 stderr，改为写入模块日志
        logger.debug("Callback server: " + format, *args)


class LoopbackCallbackServer:
    """
    Single-use HTTP listener on ``127.0.0.1:<ephemeral port>``.

    Use as a context manager so the socket is released on every exit path::

        with LoopbackCallbackServer(expected_state=state) as server:
            open_browser(build_url(redirect_uri=server.redirect_uri))
            code = await server.wait_for_authorization_code()
    """

    def __init__(self, expected_state: str, host: str = LOOPBACK_HOST):
        self.expected_state = expected_state
        self.host = host
        self.status = ListenerStatus.CREATED
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._outcome: CallbackOutcome | None = None
        self._outcome_lock = threading.Lock()
        self._done = threading.Event()

    def _create_handler_with_data(self):
        listener = self

        class DataCallbackHandler(CallbackHandler):
            def __init__(self, request, client_address, server):
                super().__init__(request, client_address, server, listener)

        return DataCallbackHandler

    def start(self) -> None:
        """Bind to an OS-assigned port and serve in a background thread."""
        if self._server is not None:
            raise RuntimeError("Callback server already started")
        # 端口 0：由操作系统分配可用端口
        self._server = HTTPServer((self.host, 0), self._create_handler_with_data())
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="oauth-callback-server",
            daemon=True,
        )
        self._thread.start()
        self.status = ListenerStatus.LISTENING
        logger.debug(f"OAuth callback server listening on {self.redirect_uri}")

    def stop(self) -> None:
        """Shut down the server and close its socket. Safe to call more than once."""
        server, self._server = self._server, None
        if server is not None:
            server.shutdown()
            server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1)
            self._thread = None
        # 唤醒仍在子线程中等待结果的调用方
        self._done.set()

    async def aclose(self) -> None:
        """Run ``stop()`` in a worker thread. Shielded, so the socket is released even on cancellation."""
        with anyio.CancelScope(shield=True):
            await to_thread.run_sync(self.stop)

    def __enter__(self) -> "LoopbackCallbackServer":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("Callback server is not running")
        return self._server.server_address[1]

    @property
    def redirect_uri(self) -> str:
        return f"http://{LOOPBACK_HOST}:{self.port}{CALLBACK_PATH}"

    @property
    def outcome(self) -> CallbackOutcome | None:
        return self._outcome

    def resolve(self, outcome: CallbackOutcome) -> bool:
        """Record the terminal outcome. Only the first call wins; returns whether this one did."""
        # 请求处理线程与等待方可能同时写入结果
        with self._outcome_lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            if outcome.error_kind is CallbackErrorKind.TIMEOUT:
                self.status = ListenerStatus.TIMED_OUT
            else:
                self.status = ListenerStatus.COMPLETED
            self._done.set()
            return True

    async def wait_for_outcome(self, timeout: float = DEFAULT_CALLBACK_TIMEOUT) -> CallbackOutcome:
        """Wait up to ``timeout`` seconds for the callback; a timeout is itself an outcome."""
        if not self._done.is_set():
            # 在子线程中阻塞等待回调；取消时放弃该线程，stop() 会将其唤醒
            await to_thread.run_sync(
                self._done.wait,
                timeout,
                abandon_on_cancel=True,
                limiter=anyio.CapacityLimiter(1),
            )

        if self._server is None and self._outcome is None:
            description = "callback server closed"
        else:
            description = f"waited {timeout:g} seconds"
        timeout_outcome = CallbackOutcome(
            error_kind=CallbackErrorKind.TIMEOUT,
            error="timeout",
            error_description=description,
        )
        # 回调可能与超时同时到达，以先记录的结果为准
        self.resolve(timeout_outcome)
        return self._outcome or timeout_outcome

    async def wait_for_authorization_code(self, timeout: float = DEFAULT_CALLBACK_TIMEOUT) -> str:
        """Wait for the callback and return its code, raising on any failed outcome."""
        outcome = await self.wait_for_outcome(timeout)
        if outcome.code is None or not outcome.success:
            raise outcome.to_exception()
        return outcome.code
