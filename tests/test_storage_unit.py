"""Unit tests for the in-memory store and the Redis wrapper."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from baymax.storage.common import login_attempts_key, login_lockout_key
from baymax.storage.memory import MemoryCache
from baymax.storage.redis_cache import RedisCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


class TestMemoryCache:
    async def test_get_set_delete(self, cache):
        assert await cache.get("k") is None
        await cache.set("k", "v")
        assert await cache.get("k") == "v"
        assert await cache.delete("k") == 1
        assert await cache.delete("k") == 0

    async def test_ttl_expiry(self, cache, clock):
        await cache.set("k", "v", ttl_seconds=10)
        clock.now = 9.9
        assert await cache.get("k") == "v"
        clock.now = 10.0
        assert await cache.get("k") is None

    async def test_set_if_absent(self, cache, clock):
        assert await cache.set_if_absent("owner", "a", ttl_seconds=5) is True
        assert await cache.set_if_absent("owner", "b") is False
        assert await cache.get("owner") == "a"

        clock.now = 6
        assert await cache.set_if_absent("owner", "b") is True
        assert await cache.get("owner") == "b"


class TestMemoryLockout:
    """The in-memory lockout mirrors the Redis script."""

    async def test_threshold_triggers_lockout(self, cache):
        for expected in range(1, 5):
            assert await cache.record_login_failure("alice", max_attempts=5) == (False, expected)
        assert await cache.record_login_failure("alice", max_attempts=5) == (True, 5)
        assert await cache.check_login_lockout("alice") is True
        assert await cache.record_login_failure("alice", max_attempts=5) == (True, -1)

    async def test_window_slides_with_each_failure(self, cache, clock):
        await cache.record_login_failure("alice", max_attempts=3, window_seconds=10)
        clock.now = 8
        await cache.record_login_failure("alice", max_attempts=3, window_seconds=10)
        clock.now = 16
        # Second failure refreshed the window, so the count carries over
        assert await cache.record_login_failure("alice", max_attempts=3, window_seconds=10) == (
            True,
            3,
        )

    async def test_failures_expire_after_window(self, cache, clock):
        await cache.record_login_failure("alice", max_attempts=3, window_seconds=10)
        clock.now = 11
        assert await cache.record_login_failure("alice", max_attempts=3, window_seconds=10) == (
            False,
            1,
        )

    async def test_lockout_expires(self, cache, clock):
        await cache.record_login_failure("alice", max_attempts=1, lockout_seconds=60)
        assert await cache.check_login_lockout("alice") is True
        clock.now = 61
        assert await cache.check_login_lockout("alice") is False

    async def test_clear_failures(self, cache):
        await cache.record_login_failure("alice", max_attempts=5)
        await cache.clear_login_failures("alice")
        assert await cache.get(login_attempts_key("alice")) is None


class TestRedisCache:
    """RedisCache wiring against a mocked client."""

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value="v")
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        client.exists = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        client.connection_pool.disconnect = AsyncMock()
        client.register_script.return_value = AsyncMock(return_value=[1, 5])
        return client

    @pytest.fixture
    def redis_cache(self, redis_client):
        with patch("baymax.storage.redis_cache.aioredis.from_url", return_value=redis_client):
            return RedisCache("redis://localhost:6379/0")

    async def test_set_passes_ttl(self, redis_cache, redis_client):
        await redis_cache.set("k", "v", ttl_seconds=30)
        redis_client.set.assert_awaited_once_with("k", "v", ex=30)

    async def test_set_if_absent_uses_nx(self, redis_cache, redis_client):
        assert await redis_cache.set_if_absent("k", "v", ttl_seconds=30) is True
        redis_client.set.assert_awaited_once_with("k", "v", nx=True, ex=30)

        redis_client.set.return_value = None
        assert await redis_cache.set_if_absent("k", "v") is False

    async def test_record_login_failure_runs_script(self, redis_cache, redis_client):
        result = await redis_cache.record_login_failure(
            "alice", max_attempts=5, window_seconds=900, lockout_seconds=600
        )

        assert result == (True, 5)
        script = redis_client.register_script.return_value
        script.assert_awaited_once_with(
            keys=[login_lockout_key("alice"), login_attempts_key("alice")],
            args=[5, 900, 600],
        )

    async def test_check_lockout(self, redis_cache, redis_client):
        assert await redis_cache.check_login_lockout("alice") is True
        redis_client.exists.assert_awaited_once_with(login_lockout_key("alice"))

    async def test_close(self, redis_cache, redis_client):
        await redis_cache.close()
        redis_client.aclose.assert_awaited_once()
