import asyncio
import json
import time
import unittest

from backend.store import InMemoryKeyValueStore
from cove import cache
from cove.cache import CacheLayer, wait_for_refreshes


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CacheLayerTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        cache._refresh_in_flight.clear()
        self.store = InMemoryKeyValueStore()
        self.clock = FakeClock()
        self.cache = CacheLayer(self.store, clock=self.clock)
        self.fetches = 0

    async def fetch(self):
        self.fetches += 1
        return {"version": self.fetches}

    async def test_envelope_format(self):
        await self.cache.set("k", {"a": 1})

        raw = json.loads(await self.store.get("k"))
        self.assertEqual(raw, {"data": {"a": 1}, "cachedAt": 1_700_000_000_000})

    async def test_miss_fetches_and_stores(self):
        value = await self.cache.read_through("k", 60, self.fetch)

        self.assertEqual(value, {"version": 1})
        envelope = await self.cache.get("k")
        self.assertEqual(envelope.data, {"version": 1})

    async def test_fresh_hit_skips_fetch(self):
        await self.cache.read_through("k", 60, self.fetch)
        self.clock.advance(59)

        value = await self.cache.read_through("k", 60, self.fetch)

        self.assertEqual(value, {"version": 1})
        self.assertEqual(self.fetches, 1)

    async def test_stale_hit_serves_cached_and_refreshes_once(self):
        await self.cache.set("k", {"version": 0})
        self.clock.advance(120)
        gate = asyncio.Event()

        async def slow_fetch():
            await gate.wait()
            return await self.fetch()

        values = await asyncio.gather(
            *(self.cache.read_through("k", 60, slow_fetch) for _ in range(5))
        )

        self.assertEqual(values, [{"version": 0}] * 5)
        self.assertEqual(cache.refreshes_in_flight(), frozenset({"k"}))

        gate.set()
        await wait_for_refreshes()

        self.assertEqual(self.fetches, 1)
        self.assertEqual(cache.refreshes_in_flight(), frozenset())
        envelope = await self.cache.get("k")
        self.assertEqual(envelope.data, {"version": 1})
        self.assertEqual(envelope.cached_at, self.cache.now_ms())

    async def test_stale_hit_refetches_inline_when_stale_not_allowed(self):
        await self.cache.set("k", {"version": 0})
        self.clock.advance(120)

        value = await self.cache.read_through("k", 60, self.fetch, stale_ok=False)

        self.assertEqual(value, {"version": 1})
        self.assertEqual(cache.refreshes_in_flight(), frozenset())

    async def test_failed_refresh_keeps_stale_value_and_clears_flag(self):
        await self.cache.set("k", {"version": 0})
        self.clock.advance(120)

        async def broken_fetch():
            raise RuntimeError("upstream down")

        value = await self.cache.read_through("k", 60, broken_fetch)
        with self.assertLogs("cove.cache", level="ERROR"):
            await wait_for_refreshes()

        self.assertEqual(value, {"version": 0})
        self.assertNotIn("k", cache.refreshes_in_flight())
        envelope = await self.cache.get("k")
        self.assertEqual(envelope.data, {"version": 0})

    async def test_unreadable_envelope_is_a_miss(self):
        await self.store.set("k", "not json")

        with self.assertLogs("cove.cache", level="WARNING"):
            value = await self.cache.read_through("k", 60, self.fetch)

        self.assertEqual(value, {"version": 1})

    async def test_payload_that_no_longer_loads_is_refetched(self):
        await self.cache.set("k", {"old": "shape"})

        def load(data):
            return data["version"]

        with self.assertLogs("cove.cache", level="WARNING"):
            value = await self.cache.read_through(
                "k", 60, self.fetch, dump=lambda v: v, load=load
            )

        self.assertEqual(value, {"version": 1})

    async def test_custom_ttl_is_passed_to_store(self):
        await self.cache.set("k", 1, ttl_seconds=5)

        _, expires_at = self.store.values["k"]
        self.assertLessEqual(expires_at - time.monotonic(), 5)

    async def test_invalidate(self):
        await self.cache.set("k", 1)
        await self.cache.invalidate("k")

        self.assertIsNone(await self.cache.get("k"))


if __name__ == "__main__":
    unittest.main()
