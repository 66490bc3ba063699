"""
Bounded retry with exponential backoff and full jitter.

Same policy Celery applies with retry_backoff/retry_jitter, but usable inside a
running coroutine so a sync run can retry one page fetch without re-queuing
the whole task.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retry number `attempt` (1-based).

    Full jitter: uniform in [0, min(max_delay, base_delay * 2 ** (attempt - 1))].
    """
    ceiling = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return ceiling * rand()


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    is_retryable: Callable[[BaseException], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
    description: Optional[str] = None,
) -> T:
    """
    Await `operation` up to `max_attempts` times.

    Only exceptions for which `is_retryable` returns True are retried; anything
    else, and the last retryable failure, propagates unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts or not is_retryable(e):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, rand)
            logger.warning(
                f"{description or 'Operation'} failed (attempt {attempt}/{max_attempts}): {e}. "
                f"Retrying in {delay:.2f}s"
            )
            await sleep(delay)
            attempt += 1
