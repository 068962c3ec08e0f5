import time
import unittest
from typing import Any, Optional

from backend.store import InMemoryKeyValueStore
from cove import cache as cache_module
from cove import keys
from cove.cache import CacheLayer
from cove.client import CoveConfig
from cove.connector import PAGE_SIZE, CoveBackupConnector
from cove.errors import ConnectorError, DeviceNotFoundError
from cove.mappers import dump
from cove.models import (
    AlertSeverity,
    DataSourceType,
    DeviceFilter,
    DeviceType,
    OverallStatus,
)

ROOT_PARTNER = 1


def recent(hours: float = 2) -> str:
    return str(int(time.time() - hours * 3600))


def row(account_id, partner_id, name, status_code, hours_ago=2, **extra):
    settings = {"I1": name, "T0": str(status_code), "TG": recent(hours_ago), "I36": "100"}
    settings.update(extra)
    return {
        "AccountId": account_id,
        "PartnerId": partner_id,
        "Settings": [{k: v} for k, v in settings.items()],
    }


ACME_ROWS = [
    row(101, 10, "ACME-SRV", 5, I32="2", I14="3000", F0="5", FG=recent()),
    row(102, 10, "ACME-WS", 2, I32="1", I14="1000", F0="2", FG=recent()),
    row(201, 20, "globex.onmicrosoft.com", 5, I14="500", G0="5", GG=recent(), GI="12"),
]


class FakeCoveClient:
    """Stands in for CoveClient; answers by method name."""

    def __init__(self, rows=None, partners=None):
        self.rows = list(rows if rows is not None else ACME_ROWS)
        self.partners = partners if partners is not None else [
            {"Id": 10, "Name": "Acme"},
            {"Id": 20, "Name": "Globex"},
        ]
        self.calls: list[tuple[str, Any]] = []
        self.storage_calls: list[tuple[str, dict]] = []
        self.fail_partners = False
        self.storage_failures = 0
        self.node_hosts = ["https://node-a.example.test/page"]
        self.draas_responses: list[Any] = []

    async def call(self, method: str, params: Optional[dict] = None) -> Any:
        self.calls.append((method, params))
        if method == "EnumeratePartners":
            if self.fail_partners:
                raise ConnectorError("cove", "partners unavailable", 500)
            return {"result": self.partners}
        if method == "EnumerateAccountStatistics":
            query = params["query"]
            start = query["StartRecordNumber"]
            return {"result": self.rows[start : start + query["RecordsCount"]]}
        if method == "EnumerateAccountRemoteAccessEndpoints":
            host = self.node_hosts[min(len(self.endpoint_calls()) - 1, len(self.node_hosts) - 1)]
            return {"result": [{"WebRcgUrl": host}]}
        if method == "GetAccountInfoById":
            return {"result": {"Token": "node-token", "Name": "acme-ws"}}
        raise AssertionError(f"unexpected method {method}")

    def endpoint_calls(self):
        return [c for c in self.calls if c[0] == "EnumerateAccountRemoteAccessEndpoints"]

    def methods(self):
        return [method for method, _ in self.calls]

    async def call_batch(self, calls):
        return [None for _ in calls]

    async def call_storage_node(self, node_url, method, params):
        self.storage_calls.append((node_url, params))
        if self.storage_failures:
            self.storage_failures -= 1
            raise ConnectorError("cove", "node token expired")
        return {
            "result": [
                {
                    "Filename": "C:/data/locked.db",
                    "Text": "File is locked",
                    "Code": 32,
                    "Count": 3,
                    "Time": 1759200000,
                    "SessionId": 77,
                }
            ]
        }

    async def draas_get(self, path, query=None):
        return self.draas_responses.pop(0)

    async def get_partner_id(self) -> int:
        return ROOT_PARTNER

    async def close(self):
        return None


class CoveBackupConnectorTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        cache_module._refresh_in_flight.clear()
        self.store = InMemoryKeyValueStore()
        self.client = FakeCoveClient()
        self.connector = CoveBackupConnector(
            CoveConfig(tool_id="test"), self.store, client=self.client
        )

    async def test_customer_rollup_and_alerts(self):
        customers = {c.name: c for c in await self.connector.get_customers()}

        acme = customers["Acme"]
        self.assertEqual(acme.total_devices, 2)
        self.assertEqual(acme.overall_status, OverallStatus.FAILED)
        self.assertEqual(customers["Globex"].overall_status, OverallStatus.HEALTHY)

        alerts = await self.connector.get_active_alerts()
        critical = [a for a in alerts if a.severity == AlertSeverity.CRITICAL]
        self.assertEqual(len(alerts), 1)
        self.assertEqual(critical[0].source_id, "backup-failed-102")
        self.assertEqual(critical[0].organization_name, "Acme")

    async def test_device_list_is_cached(self):
        await self.connector.get_devices()
        await self.connector.get_devices()

        self.assertEqual(self.client.methods().count("EnumerateAccountStatistics"), 1)
        self.assertIsNotNone(await self.store.get(keys.devices_key("test")))

    async def test_pages_until_short_page(self):
        self.client.rows = [row(1000 + i, 10, f"d{i}", 5) for i in range(PAGE_SIZE + 3)]

        devices = await self.connector.get_devices()

        self.assertEqual(len(devices), PAGE_SIZE + 3)
        offsets = [
            params["query"]["StartRecordNumber"]
            for method, params in self.client.calls
            if method == "EnumerateAccountStatistics"
        ]
        self.assertEqual(offsets, [0, PAGE_SIZE])

    async def test_bad_rows_are_skipped(self):
        self.client.rows = [
            ACME_ROWS[0],
            {"PartnerId": 10, "Settings": []},
            row(103, 10, "broken", 5, TG="not-a-time"),
        ]

        with self.assertLogs("cove.connector", level="WARNING"):
            devices = await self.connector.get_devices()

        self.assertEqual([d.source_id for d in devices], ["101"])

    async def test_out_of_range_timestamp_skips_only_that_row(self):
        self.client.rows = [ACME_ROWS[0], row(104, 10, "far-future", 5, TG="1e20")]

        with self.assertLogs("cove.connector", level="WARNING"):
            devices = await self.connector.get_devices()

        self.assertEqual([d.source_id for d in devices], ["101"])

    async def test_partner_failure_falls_back_to_ids(self):
        self.client.fail_partners = True

        with self.assertLogs("cove.connector", level="WARNING"):
            devices = await self.connector.get_devices()

        self.assertEqual({d.customer_name for d in devices}, {"Customer-10", "Customer-20"})

    async def test_filters(self):
        async def ids(**kwargs):
            devices = await self.connector.get_devices(DeviceFilter(**kwargs))
            return sorted(d.source_id for d in devices)

        self.assertEqual(await ids(customer_id="10"), ["101", "102"])
        self.assertEqual(await ids(status=OverallStatus.FAILED), ["102"])
        self.assertEqual(await ids(device_type=DeviceType.SERVER), ["101"])
        self.assertEqual(await ids(device_type=DeviceType.HOSTED_TENANT), ["201"])
        self.assertEqual(await ids(search_term="acme-"), ["101", "102"])
        self.assertEqual(await ids(search_term="GLOBEX"), ["201"])
        self.assertEqual(await ids(data_source_type=DataSourceType.M365_EXCHANGE), ["201"])
        self.assertEqual(await ids(customer_id="10", status=OverallStatus.HEALTHY), ["101"])

    async def test_device_by_id(self):
        device = await self.connector.get_device_by_id("102")
        self.assertEqual(device.device_name, "ACME-WS")

        with self.assertRaises(DeviceNotFoundError):
            await self.connector.get_device_by_id("999")

    async def test_dashboard_summary(self):
        summary = await self.connector.get_dashboard_summary()

        self.assertEqual(summary.total_devices, 3)
        self.assertEqual(summary.total_customers, 2)
        self.assertEqual(summary.by_status["failed"], 1)
        self.assertEqual(summary.by_status["healthy"], 2)
        self.assertEqual(summary.by_device_type.servers, 1)
        self.assertEqual(summary.by_device_type.workstations, 1)
        self.assertEqual(summary.by_device_type.hosted_tenants, 1)
        self.assertEqual(summary.hosted_tenants.license_count, 12)
        self.assertEqual(summary.by_session_status.failed, 1)
        self.assertEqual(summary.total_storage_bytes, 4500)
        self.assertEqual([d.source_id for d in summary.failed_devices], ["102"])

        # The summary fetch also refreshed the device list.
        await self.connector.get_devices()
        self.assertEqual(self.client.methods().count("EnumerateAccountStatistics"), 1)

    async def test_cached_summary_round_trips(self):
        first = await self.connector.get_dashboard_summary()
        second = await self.connector.get_dashboard_summary()

        self.assertEqual(first, second)
        self.assertEqual(second.as_dict()["byStatus"]["never_ran"], 0)

    async def test_storage_statistics(self):
        stats = await self.connector.get_storage_statistics()

        self.assertEqual(stats.total_bytes, 0)
        self.assertEqual(stats.used_bytes, 4500)
        self.assertEqual([d.device_id for d in stats.devices], ["101", "102", "201"])

        acme = await self.connector.get_storage_statistics("10")
        self.assertEqual(acme.used_bytes, 4000)

    async def test_error_details_rediscover_node_once(self):
        self.client.node_hosts = [
            "https://node-a.example.test/page",
            "https://node-b.example.test:443/page",
        ]
        await self.connector.get_device_error_details("102")
        await self.cache_expire(keys.errors_key("test", "102"))
        self.client.storage_failures = 1

        with self.assertLogs("cove.connector", level="WARNING"):
            errors = await self.connector.get_device_error_details("102")

        self.assertEqual(errors[0].filename, "C:/data/locked.db")
        self.assertEqual(errors[0].occurrence_count, 3)
        self.assertEqual(errors[0].session_id, "77")
        urls = [url for url, _ in self.client.storage_calls]
        self.assertEqual(
            urls,
            [
                "https://node-a.example.test",
                "https://node-a.example.test",
                "https://node-b.example.test",
            ],
        )
        params = self.client.storage_calls[0][1]
        self.assertEqual(params["token"], "node-token")
        self.assertEqual(params["account"], "acme-ws")
        self.assertEqual(params["accountId"], 102)

    async def test_error_details_reject_non_numeric_id(self):
        with self.assertRaises(DeviceNotFoundError):
            await self.connector.get_device_error_details("abc")

    async def test_recovery_verification_is_cached(self):
        self.client.draas_responses = [{"data": []}]

        first = await self.connector.get_recovery_verification("555")
        second = await self.connector.get_recovery_verification("555")

        self.assertFalse(first.available)
        self.assertEqual(first, second)

    async def test_history_with_no_snapshots(self):
        entries = await self.connector.get_device_session_history("101", days=3)

        self.assertEqual(entries, [])
        self.assertIsNotNone(await self.store.get(keys.history_key("test", "101", 3)))

    async def test_cache_info(self):
        info = await self.connector.get_cache_info()
        self.assertIsNone(info.devices_cached_at)

        await self.connector.get_devices()
        info = await self.connector.get_cache_info()

        self.assertIsNotNone(info.devices_cached_at)
        self.assertIsNone(info.summary_cached_at)

    async def test_root_partner_id_is_cached_in_store(self):
        self.assertEqual(await self.connector.get_root_partner_id(), ROOT_PARTNER)
        self.assertEqual(await self.store.get(keys.root_partner_key("test")), "1")

    async def test_stale_devices_are_served_while_refreshing(self):
        cache = CacheLayer(self.store, clock=lambda: time.time() - 3600)
        await cache.set(keys.devices_key("test"), dump([]))

        devices = await self.connector.get_devices()
        await cache_module.wait_for_refreshes()

        self.assertEqual(devices, [])
        self.assertEqual(len(await self.connector.get_devices()), 3)

    async def cache_expire(self, key: str) -> None:
        envelope = await self.connector.cache.get(key)
        stale = CacheLayer(self.store, clock=lambda: envelope.cached_at / 1000 - 3600)
        await stale.set(key, envelope.data)


if __name__ == "__main__":
    unittest.main()
