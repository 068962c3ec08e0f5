"""
Sliding-window rate limiter shared across processes through the key/value store.
"""

from __future__ import annotations

import time
import uuid

from backend.store import KeyValueStore
from cove import keys
from cove.errors import ConnectorRateLimitError


class RateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        tool_id: str,
        *,
        max_requests: int = 30,
        window_ms: int = 60_000,
    ):
        self.store = store
        self.tool_id = tool_id
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.key = keys.rate_limit_key(tool_id)

    async def acquire(self) -> None:
        """
        Claim one slot in the current window.

        Raises:
            ConnectorRateLimitError: If the window already holds max_requests calls.
        """
        now_ms = time.time() * 1000
        current = await self.store.prune_and_count(self.key, now_ms - self.window_ms)
        if current >= self.max_requests:
            raise ConnectorRateLimitError(self.tool_id, self.window_ms)

        member = f"{int(now_ms)}-{uuid.uuid4().hex[:6]}"
        await self.store.add_hit(self.key, member, now_ms, ttl_ms=self.window_ms)
