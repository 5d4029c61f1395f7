from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    await asyncio.sleep(delay)


async def call_with_retries(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = 3,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    backoff_base: float = 1.5,
) -> T:
    """Await ``func(*args)`` up to ``attempts`` times, backing off in between.

    The last error is re-raised once attempts are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await func(*args)
        except retry_on as exc:
            attempt += 1
            if attempt >= attempts:
                raise
            logger.warning(f"attempt {attempt}/{attempts} failed: {exc}; retrying")
            await schedule_retry(attempt, base=backoff_base)
