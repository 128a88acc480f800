"""
Redis Distributed Rate Limiter

Fixed-window limiter shared by every queue consumer in every process:
at most `max_requests` job starts per `window_ms` milliseconds.
"""
import asyncio
import logging
import os
from typing import Optional

import redis.asyncio as redis

import config

logger = logging.getLogger(__name__)

# Atomic INCR + PEXPIRE; returns {count, remaining window ms}
RATE_LIMIT_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


class RedisRateLimiter:
    """
    Redis fixed-window rate limiter.

    Features:
    - Atomic increment and expiration (Lua)
    - Fail-safe: allows work if Redis is unavailable or errors
    - `wait()` blocks until the caller may proceed

    Example:
        limiter = RedisRateLimiter(
            redis_client=client,
            prefix="rate:stage:referral-creation",
            max_requests=10,
            window_ms=1000,
        )
        await limiter.wait()
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        prefix: str,
        max_requests: int,
        window_ms: int,
    ):
        self.redis_client = redis_client
        self.prefix = prefix
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")
        self._rate_limit_script = None

    def _key(self) -> str:
        return f"{self.prefix}:window"

    async def try_acquire(self) -> tuple[bool, int]:
        """
        Take one slot in the current window.

        Returns:
            (allowed, retry_after_ms). retry_after_ms is 0 when allowed.
        """
        if self.redis_client is None:
            return True, 0

        try:
            if self._rate_limit_script is None:
                self._rate_limit_script = self.redis_client.register_script(RATE_LIMIT_SCRIPT)

            current_count, ttl_ms = await self._rate_limit_script(
                keys=[self._key()],
                args=[self.window_ms],
            )
            current_count = int(current_count)
            ttl_ms = int(ttl_ms)

            if current_count > self.max_requests:
                logger.debug(
                    "RATE_LIMIT_HIT",
                    extra={
                        "component": "queue",
                        "operation": "rate_limit_check",
                        "outcome": "denied",
                        "prefix": self.prefix,
                        "current_count": current_count,
                        "max_requests": self.max_requests,
                        "window_ms": self.window_ms,
                        "instance_id": self.instance_id,
                    },
                )
                return False, max(ttl_ms, 1)
            return True, 0

        except (redis.RedisError, OSError) as e:
            logger.error(
                "RATE_LIMIT_ERROR",
                extra={
                    "component": "queue",
                    "operation": "rate_limit_check",
                    "outcome": "error",
                    "reason": str(e)[:100],
                    "prefix": self.prefix,
                    "instance_id": self.instance_id,
                },
            )
            return True, 0

    async def wait(self) -> None:
        """Sleep until a slot in some window is granted."""
        while True:
            allowed, retry_after_ms = await self.try_acquire()
            if allowed:
                return
            await asyncio.sleep(retry_after_ms / 1000)


def create_queue_rate_limiter(redis_client: Optional[redis.Redis], queue_name: str) -> RedisRateLimiter:
    """Limiter for consumers of `queue_name`, sized from config."""
    return RedisRateLimiter(
        redis_client=redis_client,
        prefix=f"rate:{config.APP_ENV}:{queue_name}",
        max_requests=config.QUEUE_RATE_LIMIT_MAX,
        window_ms=config.QUEUE_RATE_LIMIT_WINDOW_MS,
    )
