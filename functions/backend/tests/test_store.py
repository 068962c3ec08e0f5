import unittest
from unittest.mock import patch

from backend.store import InMemoryKeyValueStore


class InMemoryKeyValueStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = InMemoryKeyValueStore()

    async def test_set_get_delete(self):
        await self.store.set("a", "1")
        await self.store.set("b", "2")
        self.assertEqual(await self.store.get("a"), "1")

        await self.store.delete("a", "b", "missing")

        self.assertIsNone(await self.store.get("a"))
        self.assertIsNone(await self.store.get("b"))

    async def test_values_expire(self):
        with patch("backend.store.time.monotonic", return_value=100.0):
            await self.store.set("short", "x", ttl_ms=500)
            await self.store.set("long", "y", ttl_seconds=60)

        with patch("backend.store.time.monotonic", return_value=100.6):
            self.assertIsNone(await self.store.get("short"))
            self.assertEqual(await self.store.get("long"), "y")

    async def test_set_if_absent(self):
        self.assertTrue(await self.store.set_if_absent("lock", "me", ttl_ms=1000))
        self.assertFalse(await self.store.set_if_absent("lock", "you", ttl_ms=1000))
        self.assertEqual(await self.store.get("lock"), "me")

    async def test_set_if_absent_after_expiry(self):
        with patch("backend.store.time.monotonic", return_value=0.0):
            await self.store.set_if_absent("lock", "me", ttl_ms=1000)
        with patch("backend.store.time.monotonic", return_value=2.0):
            self.assertTrue(await self.store.set_if_absent("lock", "you", ttl_ms=1000))
            self.assertEqual(await self.store.get("lock"), "you")

    async def test_sliding_window(self):
        await self.store.add_hit("w", "a", 1000, ttl_ms=60_000)
        await self.store.add_hit("w", "b", 2000, ttl_ms=60_000)
        await self.store.add_hit("w", "c", 3000, ttl_ms=60_000)

        self.assertEqual(await self.store.prune_and_count("w", 2000), 1)
        self.assertEqual(await self.store.prune_and_count("missing", 0), 0)

    async def test_reset(self):
        await self.store.set("a", "1")
        await self.store.add_hit("w", "a", 1, ttl_ms=1000)

        self.store.reset()

        self.assertIsNone(await self.store.get("a"))
        self.assertEqual(await self.store.prune_and_count("w", 0), 0)


if __name__ == "__main__":
    unittest.main()
