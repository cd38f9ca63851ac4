from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from baymax.storage.common import login_attempts_key, login_lockout_key


class RedisCache:
    """Thin Redis wrapper for chat history, owner tags and login lockout."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic check-and-increment: concurrent failed logins cannot all slip
    # past the threshold before any of them increments the counter.
    _LOGIN_FAILURE_SCRIPT = """
-- Already locked out
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

-- Sliding window: every failure pushes the window expiry out
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # A short-lived synchronous client avoids binding the async client to
        # a temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl_seconds if ttl_seconds and ttl_seconds > 0 else None)

    async def set_if_absent(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> bool:
        """SET NX; returns True when this call created the key."""
        created = await self.client.set(
            key, value, nx=True, ex=ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        )
        return bool(created)

    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Reset the TTL of an existing key; False when the key is gone."""
        return bool(await self.client.expire(key, ttl_seconds))

    # =========================================================================
    # Login lockout (password mode)
    # =========================================================================

    async def check_login_lockout(self, username: str) -> bool:
        """Return True while the username is locked out."""
        return bool(await self.client.exists(login_lockout_key(username)))

    async def record_login_failure(
        self,
        username: str,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        lockout_seconds: int = 900,
    ) -> tuple[bool, int]:
        """Atomically record a failed login and trigger lockout at the threshold.

        Returns:
            Tuple of (is_now_locked_out, current_attempts); attempts is -1
            when the username was already locked out.
        """
        result = await self._login_failure(
            keys=[login_lockout_key(username), login_attempts_key(username)],
            args=[max_attempts, window_seconds, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_login_failures(self, username: str) -> None:
        await self.client.delete(login_attempts_key(username))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
