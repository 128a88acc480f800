"""
Unit tests for the Redis fixed-window rate limiter and the session store.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis.asyncio as redis

from app.core.exceptions import DependencyUnavailableError
from app.core.rate_limiter import RedisRateLimiter
from app.core.session_store import RedisSessionStore, new_session_id


def make_limiter(script_results):
    script = AsyncMock(side_effect=script_results)
    client = MagicMock()
    client.register_script = MagicMock(return_value=script)
    limiter = RedisRateLimiter(client, prefix="rate:test:q", max_requests=10, window_ms=1000)
    return limiter, script


class TestRedisRateLimiter:
    """Tests for slot acquisition"""

    @pytest.mark.asyncio
    async def test_within_limit(self):
        limiter, script = make_limiter([[1, 1000]])

        assert await limiter.try_acquire() == (True, 0)
        script.assert_awaited_once_with(keys=["rate:test:q:window"], args=[1000])

    @pytest.mark.asyncio
    async def test_over_limit_reports_retry_after(self):
        limiter, _ = make_limiter([[11, 250]])
        assert await limiter.try_acquire() == (False, 250)

    @pytest.mark.asyncio
    async def test_redis_error_fails_open(self):
        limiter, _ = make_limiter(redis.ConnectionError("down"))
        assert await limiter.try_acquire() == (True, 0)

    @pytest.mark.asyncio
    async def test_no_client_allows(self):
        limiter = RedisRateLimiter(None, prefix="rate:test:q", max_requests=1, window_ms=1000)
        assert await limiter.try_acquire() == (True, 0)

    @pytest.mark.asyncio
    async def test_wait_sleeps_until_allowed(self):
        limiter, _ = make_limiter([[11, 300], [12, 100], [1, 1000]])

        with patch("app.core.rate_limiter.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await limiter.wait()

        assert [c.args[0] for c in sleep.await_args_list] == [0.3, 0.1]


class TestRedisSessionStore:
    """Tests for session persistence"""

    def make_store(self, stored=None):
        client = MagicMock()
        client.get = AsyncMock(return_value=stored)
        client.set = AsyncMock()
        client.delete = AsyncMock()
        return RedisSessionStore(client, prefix="session:test", ttl_seconds=60), client

    @pytest.mark.asyncio
    async def test_save_sets_ttl(self):
        store, client = self.make_store()
        await store.save("abc", {"identity": "1"})
        client.set.assert_awaited_once_with("session:test:abc", json.dumps({"identity": "1"}), ex=60)

    @pytest.mark.asyncio
    async def test_load(self):
        store, _ = self.make_store('{"identity": "1"}')
        assert await store.load("abc") == {"identity": "1"}

    @pytest.mark.asyncio
    async def test_load_missing(self):
        store, _ = self.make_store(None)
        assert await store.load("abc") is None

    @pytest.mark.asyncio
    async def test_corrupt_session_dropped(self):
        store, client = self.make_store("{not json")
        assert await store.load("abc") is None
        client.delete.assert_awaited_once_with("session:test:abc")

    @pytest.mark.asyncio
    async def test_without_redis(self):
        with pytest.raises(DependencyUnavailableError):
            await RedisSessionStore(None).load("abc")

    def test_session_ids_are_unique(self):
        assert len({new_session_id() for _ in range(100)}) == 100
