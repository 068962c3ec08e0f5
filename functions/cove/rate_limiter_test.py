import unittest
from unittest.mock import patch

from backend.store import InMemoryKeyValueStore
from cove.errors import ConnectorRateLimitError
from cove.rate_limiter import RateLimiter


class RateLimiterTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = InMemoryKeyValueStore()
        self.limiter = RateLimiter(self.store, "test", max_requests=3, window_ms=60_000)

    async def test_raises_when_window_is_full(self):
        for _ in range(3):
            await self.limiter.acquire()

        with self.assertRaises(ConnectorRateLimitError) as ctx:
            await self.limiter.acquire()
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.retry_after_ms, 60_000)

    async def test_old_hits_slide_out_of_window(self):
        with patch("cove.rate_limiter.time.time", return_value=1_000.0):
            for _ in range(3):
                await self.limiter.acquire()
        with patch("cove.rate_limiter.time.time", return_value=1_061.0):
            await self.limiter.acquire()

        self.assertEqual(
            await self.store.prune_and_count("ratelimit:connector:test", 0), 1
        )

    async def test_windows_are_per_tool(self):
        other = RateLimiter(self.store, "other", max_requests=1)
        for _ in range(3):
            await self.limiter.acquire()

        await other.acquire()


if __name__ == "__main__":
    unittest.main()
