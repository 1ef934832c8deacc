"""
Shared token cache.

Maps a cache key (one per logical identity) to the state shared by every
provider built for that identity, so concurrent connections to the same
identity provider run a single login flow between them.
"""

import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from anyio import to_thread

from flightsql_oauth.shared.auth import TokenInfo


def authorization_code_cache_key(token_endpoint: str, client_id: str) -> str:
    return f"authorization_code|{token_endpoint}|{client_id}"


def server_side_cache_key(oauth_base_url: str) -> str:
    return f"server_side|{oauth_base_url.rstrip('/')}"


# 等待锁时每次在工作线程中阻塞的最长时间（秒），保证取消能及时生效
_LOCK_WAIT_SLICE = 0.5


@dataclass
class SharedProviderState:
    """
    Mutable state for one cache key. ``token`` is only ever replaced, never edited.

    The lock is a ``threading.Lock`` so callers on different threads, each
    running its own event loop, still serialize on the same key.
    """

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    token: TokenInfo | None = None
    # 仅授权码流程使用；不会出现在日志或错误信息中
    refresh_token: str | None = field(default=None, repr=False)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Hold the key's lock without blocking the event loop."""
        if not self.lock.acquire(blocking=False):
            # 在子线程中分片等待，主循环不被阻塞
            while not await to_thread.run_sync(self.lock.acquire, True, _LOCK_WAIT_SLICE):
                pass
        try:
            yield
        finally:
            self.lock.release()


class TokenCache:
    """
    Key to ``SharedProviderState`` map with atomic get-or-create.

    Entries are never evicted; their number is bounded by the distinct
    identity configurations a process uses, not by its connection count.
    """

    def __init__(self) -> None:
        self._states: dict[str, SharedProviderState] = {}
        self._lock = threading.Lock()

    def get_state(self, key: str) -> SharedProviderState:
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = SharedProviderState()
                self._states[key] = state
            return state

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


_default_cache: TokenCache | None = None
_default_cache_lock = threading.Lock()


def get_default_token_cache() -> TokenCache:
    """Process-wide cache used by providers that are not given one explicitly."""
    global _default_cache
    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = TokenCache()
        return _default_cache
