"""
Mutual exclusion over the shared key/value store.

Guards the rotating session visa: only one holder at a time may read the
current visa and write back the one the server returns. Acquisition polls
SET NX with a short fixed delay; after max_wait the lock is taken over
unconditionally. Liveness wins over strict exclusivity here: if the store
loses a release, or a holder dies mid-call, callers stall for at most
max_wait instead of deadlocking. The price is a brief window where two
holders can overlap and one of them gets a stale visa, which the retry
path recovers from by logging in again. No fencing token is used.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from backend.store import KeyValueStore

logger = logging.getLogger(__name__)

LOCK_TTL_MS = 10_000
LOCK_RETRY_DELAY_SECONDS = 0.1
LOCK_MAX_WAIT_SECONDS = 15.0


class DistributedLock:
    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        *,
        ttl_ms: int = LOCK_TTL_MS,
        retry_delay: float = LOCK_RETRY_DELAY_SECONDS,
        max_wait: float = LOCK_MAX_WAIT_SECONDS,
    ):
        self.store = store
        self.key = key
        self.ttl_ms = ttl_ms
        self.retry_delay = retry_delay
        self.max_wait = max_wait

    async def acquire(self, ttl_ms: Optional[int] = None) -> bool:
        """Returns True if taken cleanly, False if it was force-acquired."""
        ttl_ms = ttl_ms or self.ttl_ms
        started = time.monotonic()
        while time.monotonic() - started < self.max_wait:
            if await self.store.set_if_absent(self.key, "1", ttl_ms=ttl_ms):
                return True
            await asyncio.sleep(self.retry_delay)

        logger.warning(
            "Lock %s still held after %.1fs; forcing takeover", self.key, self.max_wait
        )
        await self.store.set(self.key, "1", ttl_ms=ttl_ms)
        return False

    async def release(self) -> None:
        await self.store.delete(self.key)

    @asynccontextmanager
    async def hold(self, ttl_ms: Optional[int] = None) -> AsyncIterator[None]:
        await self.acquire(ttl_ms)
        try:
            yield
        finally:
            await self.release()
