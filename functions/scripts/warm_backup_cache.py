"""
Daemon that keeps the backup device list and dashboard summary caches warm.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.config import get_settings
from backend.dependencies import get_kv_store
from cove.client import CoveConfig
from cove.connector import CoveBackupConnector
from cove.errors import ConnectorError

logger = logging.getLogger(__name__)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    if not settings.cove_configured:
        logger.error("COVE_PARTNER, COVE_USERNAME and COVE_PASSWORD must be set")
        return 2

    store = get_kv_store()
    connector = CoveBackupConnector(CoveConfig.from_settings(settings), store)
    try:
        if args.health_check:
            result = await connector.health_check()
            if result.ok:
                logger.info("Health check ok in %dms", result.latency_ms)
                return 0
            logger.error("Health check failed after %dms: %s", result.latency_ms, result.message)
            return 1

        while True:
            try:
                summary = await connector.refresh_summary()
                logger.info(
                    "Cache warmed: %d devices across %d customers",
                    summary.total_devices,
                    summary.total_customers,
                )
            except ConnectorError as exc:
                logger.exception("Cache warm failed: %s", exc)
                if args.once:
                    return 1

            if args.once:
                return 0

            sleep_for = args.interval_seconds + random.uniform(0, args.jitter_seconds)
            logger.info("Sleeping for %.1fs", sleep_for)
            await asyncio.sleep(sleep_for)
    finally:
        await connector.close()
        await store.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Backup connector cache warmer")
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=1500,
        help="Seconds between refreshes (keep under the 30 minute freshness window)",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=int,
        default=60,
        help="Max random jitter added to sleep",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Refresh once and exit",
    )
    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Log in once, report the result and exit non-zero on failure",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
