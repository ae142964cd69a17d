"""
Read Retry

Exponential backoff for read-only venue calls (positions, balances, market
metadata). Only TransientError is retried. Order submission must never go
through this helper: an ambiguous submission retried is a duplicate order.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from copybot.core.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 4
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 8.0


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number `attempt` (1-based): base, 2*base, 4*base ... capped."""
    return min(base * (2 ** (attempt - 1)), cap)


async def retry_read(
    call: Callable[..., Awaitable[T]],
    *args,
    attempts: int = DEFAULT_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs,
) -> T:
    """
    Awaits `call(*args, **kwargs)`, retrying transient failures.

    Args:
        call: A read-only coroutine function.
        attempts: Total attempts including the first one.
        base_delay: Delay before the first retry, doubled on each further retry.
        max_delay: Upper bound on any single delay.
        sleep: Injected for tests.

    Raises:
        TransientError: when every attempt failed transiently.
        Any non-transient error immediately.
    """
    attempt = 1
    while True:
        try:
            return await call(*args, **kwargs)
        except TransientError as e:
            if attempt >= attempts:
                logger.warning(f"⚠️ {getattr(call, '__name__', 'read')} failed after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug(f"Transient failure on {getattr(call, '__name__', 'read')} ({e}); retry {attempt}/{attempts - 1} in {delay:.2f}s")
            await sleep(delay)
            attempt += 1
