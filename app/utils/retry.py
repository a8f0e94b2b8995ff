"""
Async retry helper for transient infrastructure failures.

Retry policy:
- Exponential backoff with ±20% jitter
- Only exceptions listed in retry_on are retried
- Domain errors (plan, principal, renewal) are raised immediately
- The last exception propagates unchanged once attempts run out

The helper never logs; callers log with their own event tags.
"""

import asyncio
import random
from typing import Any, Callable, Tuple, Type

import aiohttp
import asyncpg


DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0


TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncio.TimeoutError,
    aiohttp.ClientError,  # Bot API transport
    ConnectionError,
    OSError,
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (0-based), jitter included"""
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


async def retry_async(
    fn: Callable[[], Any],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Call fn() until it succeeds or retries are exhausted.

    Args:
        fn: Zero-argument callable returning an awaitable (or a plain value)
        retries: Extra attempts after the first one
        base_delay: Backoff base in seconds
        max_delay: Backoff ceiling in seconds
        retry_on: Exception types worth another attempt

    Raises:
        The original exception when it is not retryable or attempts run out
    """
    for attempt in range(retries + 1):
        try:
            result = fn()
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                result = await result
            return result
        except retry_on:
            if attempt >= retries:
                raise
            await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))

    raise RuntimeError("retry_async: unexpected end of retry loop")
