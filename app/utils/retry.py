"""
Centralized async retry utility for transient failures.

Retry policy:
- Exponential backoff with jitter
- Only retries on transient failures
- Preserves original exception on final failure
- No logging inside utility (caller handles logging)

Transient exceptions: asyncpg.PostgresError (except integrity violations),
redis connection/timeout errors, asyncio.TimeoutError, ConnectionError, OSError.
Domain and validation errors are raised immediately.
"""

import asyncio
import inspect
import random
from typing import Any, Callable, Tuple, Type

import asyncpg
import redis.exceptions


DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0


TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncpg.PostgresError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)

# Constraint violations are deterministic; retrying them cannot succeed
NON_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncpg.IntegrityConstraintViolationError,
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: float = 0.2) -> float:
    """
    Delay before retry number `attempt` (0-based): base * 2**attempt, capped,
    with +/- `jitter` proportional noise.
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    if jitter:
        delay += delay * jitter * (random.random() * 2 - 1)
    return max(0.0, delay)


async def retry_async(
    fn: Callable[[], Any],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Retry an async function with exponential backoff.

    Args:
        fn: Callable returning an awaitable (or a plain value)
        retries: Number of retry attempts (default: 2, total attempts: 3)
        base_delay: Base delay in seconds for exponential backoff
        max_delay: Maximum delay in seconds
        retry_on: Exception types to retry on

    Returns:
        Result of the function call

    Raises:
        Original exception if all retries fail.
        Non-retryable exceptions are raised immediately.
    """
    for attempt in range(retries + 1):
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            if isinstance(e, NON_RETRYABLE_EXCEPTIONS) or not isinstance(e, retry_on):
                raise
            if attempt >= retries:
                raise
            await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))

    raise RuntimeError("retry_async: unexpected end of retry loop")
