"""
Redis client infrastructure layer.

Async Redis client singleton shared by the job queue, the session store and
the queue rate limiter.

- Singleton client with its own connection pool
- Health check (PING)
- Graceful degradation in local/stage when REDIS_URL is not configured
"""
import logging
from typing import Optional

import redis.asyncio as redis

import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create the Redis client singleton.

    Returns:
        Redis client if REDIS_URL is configured, None otherwise.
        Creating the client does not open a connection; the first command does.
    """
    global _redis_client

    if not config.REDIS_URL:
        return None

    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=max(config.REDIS_MAX_CONNECTIONS, config.QUEUE_CONCURRENCY + 5),
            client_name=f"signature-campaign-{config.APP_ENV}",
        )
        logger.info("Redis client created successfully")
        return _redis_client
    except (redis.RedisError, ValueError) as e:
        logger.error(f"Failed to create Redis client: {type(e).__name__}: {e}")
        return None


async def check_redis_health() -> bool:
    """
    PING Redis.

    Returns:
        True if Redis is configured and answered, False otherwise.
    """
    if not config.REDIS_URL:
        logger.debug("Redis health check skipped: REDIS_URL not configured")
        return False

    client = await get_redis_client()
    if client is None:
        logger.warning("REDIS_CONNECTION_FAILED reason=client_creation_failed")
        return False

    try:
        if await client.ping():
            return True
        logger.warning("REDIS_CONNECTION_FAILED reason=ping_failed")
        return False
    except (redis.RedisError, OSError) as e:
        error_msg = str(e)[:100] if str(e) else "unknown"
        logger.warning(f"REDIS_CONNECTION_FAILED reason=ping_exception error={type(e).__name__}: {error_msg}")
        return False


async def close_redis_client():
    """Close the client connection pool. Called during shutdown."""
    global _redis_client

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except (redis.RedisError, OSError) as e:
            logger.error(f"Error closing Redis client: {e}")
        finally:
            _redis_client = None
