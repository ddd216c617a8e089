"""
CSRF token pool bound to a caller-supplied session store.

A pool holds several single-use tokens per session so that concurrent
forms each get their own token. The pool keeps no state of its own: it is
created per request around whatever ``SessionStore`` the caller passes in.
Every change to a pool is one ``SessionStore.update`` call, so two requests
racing on the same token cannot both consume it.
"""

import hmac
import logging
import secrets
import threading
import time
from typing import Any, Callable, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
POOL_KEY = "csrf_token_pool"

T = TypeVar("T")


class SessionStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def update(self, key: str, mutate: Callable[[Optional[Any]], tuple[Optional[Any], T]]) -> T:
        """
        Atomically replace the value under ``key``.

        ``mutate`` receives the current value and returns ``(new_value, result)``;
        a ``new_value`` of None deletes the key. Returns ``result``.
        """
        ...


class InMemorySessionStore:
    """Dict-backed session store for a single process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def update(self, key: str, mutate: Callable[[Optional[Any]], tuple[Optional[Any], T]]) -> T:
        with self._lock:
            value, result = mutate(self._data.get(key))
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
            return result


class CsrfTokenPool:
    def __init__(
        self,
        store: SessionStore,
        session_id: str,
        max_tokens: int = 10,
        ttl_seconds: int = 3600,
    ):
        if not session_id:
            raise ValueError("A session id is required")
        self.store = store
        self.key = f"{POOL_KEY}:{session_id}"
        self.max_tokens = max_tokens
        self.ttl_seconds = ttl_seconds

    def _live(self, stored: Optional[Any], now: float) -> dict[str, float]:
        if not isinstance(stored, dict):
            return {}
        return {
            token: issued_at
            for token, issued_at in stored.items()
            if now - issued_at <= self.ttl_seconds
        }

    def generate(self) -> str:
        """Add a fresh token to the pool, dropping the oldest ones past ``max_tokens``."""
        now = time.time()
        token = secrets.token_hex(TOKEN_BYTES)

        def add(stored):
            pool = self._live(stored, now)
            pool[token] = now
            if len(pool) > self.max_tokens:
                newest = sorted(pool.items(), key=lambda item: item[1], reverse=True)[: self.max_tokens]
                pool = dict(newest)
            return pool, token

        return self.store.update(self.key, add)

    def verify(self, token: Optional[str], consume: bool = True) -> bool:
        if not token:
            logger.warning("CSRF check failed: no token supplied")
            return False

        now = time.time()

        def check(stored):
            pool = self._live(stored, now)
            match = None
            for candidate in pool:
                if hmac.compare_digest(candidate, token):
                    match = candidate
                    break
            if match is not None and consume:
                del pool[match]
            return pool or None, match is not None

        if not self.store.update(self.key, check):
            logger.warning("CSRF check failed: unknown or expired token")
            return False
        return True

    def clear(self) -> None:
        self.store.delete(self.key)

    def __len__(self) -> int:
        return len(self._live(self.store.get(self.key), time.time()))
