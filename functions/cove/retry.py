"""
Exponential backoff with jitter for transient failure retry.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Runs a coroutine factory up to max_attempts times.

    should_retry decides whether an error is transient; on_retry runs before
    the backoff sleep (used to drop a dead session token).
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_ratio: float = 0.1
    should_retry: Optional[Callable[[BaseException], bool]] = None
    on_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        return delay + delay * self.jitter_ratio * random.random()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(self.max_attempts):
            try:
                return await fn()
            except Exception as exc:
                if attempt + 1 >= self.max_attempts:
                    raise
                if self.should_retry and not self.should_retry(exc):
                    raise
                if self.on_retry:
                    await self.on_retry(attempt + 1, exc)
                delay = self.delay_for(attempt)
                logger.info(
                    "Retrying after %s (attempt %d/%d, sleeping %.2fs)",
                    exc,
                    attempt + 2,
                    self.max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
        raise RuntimeError("RetryPolicy.max_attempts must be at least 1")
