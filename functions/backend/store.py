"""
Shared key/value store abstraction.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production. Every connector process sharing one store
sees the same session token, lock, rate-limit window and cache envelopes.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis.asyncio as redis


class KeyValueStore(Protocol):
    """Minimal store interface used by the connector."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: int | None = None,
        ttl_ms: int | None = None,
    ) -> None:
        ...

    async def set_if_absent(self, key: str, value: str, *, ttl_ms: int) -> bool:
        ...

    async def delete(self, *keys: str) -> None:
        ...

    async def prune_and_count(self, key: str, min_score: float) -> int:
        ...

    async def add_hit(self, key: str, member: str, score: float, *, ttl_ms: int) -> None:
        ...

    async def close(self) -> None:
        ...


def _expiry(ttl_seconds: int | None, ttl_ms: int | None) -> Optional[float]:
    if ttl_ms is not None:
        return time.monotonic() + ttl_ms / 1000
    if ttl_seconds is not None:
        return time.monotonic() + ttl_seconds
    return None


@dataclass
class InMemoryKeyValueStore:
    """Process-local store for testing/dev."""

    values: dict[str, tuple[str, Optional[float]]] = field(default_factory=dict)
    windows: dict[str, tuple[dict[str, float], Optional[float]]] = field(
        default_factory=dict
    )

    def _live_value(self, key: str) -> Optional[str]:
        entry = self.values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self.values.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live_value(key)

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: int | None = None,
        ttl_ms: int | None = None,
    ) -> None:
        self.values[key] = (value, _expiry(ttl_seconds, ttl_ms))

    async def set_if_absent(self, key: str, value: str, *, ttl_ms: int) -> bool:
        if self._live_value(key) is not None:
            return False
        self.values[key] = (value, _expiry(None, ttl_ms))
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self.values.pop(key, None)
            self.windows.pop(key, None)

    async def prune_and_count(self, key: str, min_score: float) -> int:
        entry = self.windows.get(key)
        if entry is None:
            return 0
        members, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self.windows.pop(key, None)
            return 0
        for member, score in list(members.items()):
            if score <= min_score:
                members.pop(member)
        return len(members)

    async def add_hit(self, key: str, member: str, score: float, *, ttl_ms: int) -> None:
        members, _ = self.windows.get(key, ({}, None))
        members[member] = score
        self.windows[key] = (members, _expiry(None, ttl_ms))

    async def close(self) -> None:
        return None

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.values.clear()
        self.windows.clear()


@dataclass
class RedisKeyValueStore:
    """Redis-backed store; sliding windows use sorted sets scored by epoch ms."""

    url: str

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: int | None = None,
        ttl_ms: int | None = None,
    ) -> None:
        await self.client.set(key, value, ex=ttl_seconds, px=ttl_ms)

    async def set_if_absent(self, key: str, value: str, *, ttl_ms: int) -> bool:
        acquired = await self.client.set(key, value, px=ttl_ms, nx=True)
        return bool(acquired)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    async def prune_and_count(self, key: str, min_score: float) -> int:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, min_score)
            pipe.zcard(key)
            _, count = await pipe.execute()
        return int(count or 0)

    async def add_hit(self, key: str, member: str, score: float, *, ttl_ms: int) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {member: score})
            pipe.pexpire(key, ttl_ms)
            await pipe.execute()

    async def close(self) -> None:
        await self.client.aclose()
