"""
Bounded retry for transient network failures.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from config.settings import Settings, get_settings
from .errors import NetworkFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, cap: float, jitter: float = 0.25) -> float:
    """
    Delay before retry number `attempt` (1-based): base * 2^(attempt-1),
    capped, then spread by +/- jitter.
    """
    delay = min(cap, base * (2 ** (attempt - 1)))
    if jitter and delay:
        delay *= 1 + random.uniform(-jitter, jitter)
    return max(0.0, delay)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    description: str = "store call",
    settings: Optional[Settings] = None,
    attempts: Optional[int] = None,
) -> T:
    """
    Run `operation`, retrying only NetworkFailure.

    Every other error propagates on the first occurrence. After the last
    attempt the NetworkFailure itself is raised.

    Only pass operations that are safe to repeat.
    """
    settings = settings or get_settings()
    attempts = attempts or settings.retry_attempts

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except NetworkFailure as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, settings.retry_base_delay, settings.retry_max_delay)
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)

    # attempts >= 1 always returns or raises above
    raise NetworkFailure(f"{description}: no attempts made")
