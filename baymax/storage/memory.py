from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from baymax.storage.common import login_attempts_key, login_lockout_key


class MemoryCache:
    """In-process stand-in for Redis used by tests and local development.

    Values expire lazily on access. Not shared between processes, so it is
    only selected under TEST_MODE, USE_MEMORY_STORE or
    ALLOW_REDIS_FALLBACK_DEV.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def _expires_at(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds and ttl_seconds > 0:
            return self._clock() + ttl_seconds
        return None

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            return self._live(key)

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        with self._data_lock:
            self._data[key] = (value, self._expires_at(ttl_seconds))

    async def set_if_absent(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> bool:
        with self._data_lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expires_at(ttl_seconds))
            return True

    async def delete(self, key: str) -> int:
        with self._data_lock:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return 1 if existed else 0

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._data_lock:
            value = self._live(key)
            if value is None:
                return False
            self._data[key] = (value, self._expires_at(ttl_seconds))
            return True

    async def check_login_lockout(self, username: str) -> bool:
        with self._data_lock:
            return self._live(login_lockout_key(username)) is not None

    async def record_login_failure(
        self,
        username: str,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        lockout_seconds: int = 900,
    ) -> tuple[bool, int]:
        """Mirror of the Redis lockout script, guarded by the data lock."""
        lockout = login_lockout_key(username)
        attempts_key = login_attempts_key(username)
        with self._data_lock:
            if self._live(lockout) is not None:
                return (True, -1)
            attempts = int(self._live(attempts_key) or 0) + 1
            self._data[attempts_key] = (str(attempts), self._expires_at(window_seconds))
            if attempts >= max_attempts:
                self._data[lockout] = ("1", self._expires_at(lockout_seconds))
                self._data.pop(attempts_key, None)
                return (True, attempts)
            return (False, attempts)

    async def clear_login_failures(self, username: str) -> None:
        with self._data_lock:
            self._data.pop(login_attempts_key(username), None)

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()
