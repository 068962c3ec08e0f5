"""
Stale-while-revalidate cache over the shared key/value store.

Each key holds one JSON envelope `{"data": ..., "cachedAt": <epoch ms>}`,
written whole with a single SET so a reader sees all of it or nothing. The
store TTL only bounds how long stale data may be served; freshness is decided
per read from cachedAt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from dacite import DaciteError

from backend.store import KeyValueStore
from shared.json_utils import json_default

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 24 * 60 * 60

# At most one background refresh per key in this process.
_refresh_in_flight: set[str] = set()
_refresh_tasks: set[asyncio.Task] = set()


@dataclass
class CacheEnvelope:
    data: Any
    cached_at: int  # epoch ms


def _identity(value: Any) -> Any:
    return value


class CacheLayer:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.default_ttl = default_ttl
        self.clock = clock

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def get(self, key: str) -> Optional[CacheEnvelope]:
        raw = await self.store.get(key)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            return CacheEnvelope(data=payload["data"], cached_at=int(payload["cachedAt"]))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable cache envelope at %s", key)
            return None

    async def set(self, key: str, data: Any, ttl_seconds: Optional[int] = None) -> None:
        envelope = {"data": data, "cachedAt": self.now_ms()}
        await self.store.set(
            key,
            json.dumps(envelope, default=json_default),
            ttl_seconds=ttl_seconds or self.default_ttl,
        )

    async def invalidate(self, key: str) -> None:
        await self.store.delete(key)

    def is_fresh(self, cached_at: int, freshness_seconds: float) -> bool:
        return self.now_ms() - cached_at < freshness_seconds * 1000

    async def read_through(
        self,
        key: str,
        freshness_seconds: float,
        fetch: Callable[[], Awaitable[T]],
        *,
        dump: Callable[[T], Any] = _identity,
        load: Callable[[Any], T] = _identity,
        stale_ok: bool = True,
        ttl_seconds: Optional[int] = None,
    ) -> T:
        """
        Fresh hit: return cached. Stale hit: return cached and refresh in the
        background (or refetch inline when stale_ok is False). Miss: fetch,
        store, return.
        """
        envelope = await self.get(key)
        if envelope is not None:
            cached = self._decode(key, envelope, load)
            if cached is not None:
                if self.is_fresh(envelope.cached_at, freshness_seconds):
                    return cached
                if stale_ok:
                    self.background_refresh(
                        key, lambda: self._refresh(key, fetch, dump, ttl_seconds)
                    )
                    return cached

        value = await fetch()
        await self.set(key, dump(value), ttl_seconds)
        return value

    def background_refresh(
        self, key: str, refresh: Callable[[], Awaitable[None]]
    ) -> bool:
        """Schedule refresh unless one is already running for key."""
        if key in _refresh_in_flight:
            return False
        _refresh_in_flight.add(key)
        task = asyncio.create_task(self._run_refresh(key, refresh))
        _refresh_tasks.add(task)
        task.add_done_callback(_refresh_tasks.discard)
        return True

    async def _run_refresh(self, key: str, refresh: Callable[[], Awaitable[None]]) -> None:
        try:
            await refresh()
        except Exception:
            logger.exception("Background refresh failed for %s", key)
        finally:
            _refresh_in_flight.discard(key)

    async def _refresh(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        dump: Callable[[T], Any],
        ttl_seconds: Optional[int],
    ) -> None:
        value = await fetch()
        await self.set(key, dump(value), ttl_seconds)

    def _decode(self, key: str, envelope: CacheEnvelope, load: Callable[[Any], T]) -> Optional[T]:
        try:
            return load(envelope.data)
        except (DaciteError, ValueError, KeyError, TypeError):
            logger.warning("Cached payload at %s no longer decodes; refetching", key)
            return None


def refreshes_in_flight() -> frozenset[str]:
    return frozenset(_refresh_in_flight)


async def wait_for_refreshes() -> None:
    """Block until every scheduled background refresh has finished."""
    while _refresh_tasks:
        await asyncio.gather(*list(_refresh_tasks), return_exceptions=True)
