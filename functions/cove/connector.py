"""
Cove Data Protection backup connector.

Read-only façade over CoveClient. Device, partner and summary reads are
served stale-while-revalidate from the shared cache; per-device detail reads
(errors, recovery, storage-node endpoints) refetch once their freshness
window lapses. Backup status moves on the order of hours, so windows are
generous.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from backend.store import KeyValueStore
from cove import keys
from cove.alerts import generate_alerts
from cove.cache import CacheLayer
from cove.client import CoveClient, CoveConfig
from cove.columns import DEVICE_LIST_COLUMNS, from_unix
from cove.errors import ConnectorError, DeviceNotFoundError, MappingError
from cove.history import HistoryReconstructor
from cove.mappers import (
    aggregate_by_customer,
    dump,
    load,
    load_list,
    map_statistics_row,
    result_rows,
)
from cove.models import (
    Alert,
    BackupCustomer,
    BackupDevice,
    BackupErrorDetail,
    CacheInfo,
    DashboardSummary,
    DataSourceType,
    DeviceFilter,
    DeviceStorage,
    DeviceType,
    DeviceTypeBreakdown,
    HealthCheckResult,
    HostedTenantSummary,
    OsType,
    OverallStatus,
    RecencyBreakdown,
    RecoveryEnabledDevice,
    RecoveryVerification,
    SessionHistoryEntry,
    SessionStatus,
    SessionStatusBreakdown,
    StorageNodeEndpoint,
    StorageStatistics,
    utc_now,
)
from cove.recovery import RecoveryVerificationFetcher

logger = logging.getLogger(__name__)

MINUTE = 60
HOUR = 60 * MINUTE

FRESHNESS_DEVICES = 30 * MINUTE
FRESHNESS_PARTNERS = HOUR
FRESHNESS_SUMMARY = 30 * MINUTE
FRESHNESS_HISTORY = 15 * MINUTE
FRESHNESS_STORAGE_NODE = 10 * MINUTE
FRESHNESS_ERRORS = 5 * MINUTE
FRESHNESS_RECOVERY = 15 * MINUTE
FRESHNESS_RECOVERY_DEVICES = 30 * MINUTE

HISTORY_TTL = 6 * HOUR
STORAGE_NODE_TTL = 30 * MINUTE
ERRORS_TTL = HOUR
RECOVERY_TTL = 2 * HOUR
ROOT_PARTNER_TTL = 24 * HOUR

PAGE_SIZE = 250
SUMMARY_DEVICE_LIMIT = 20
ERROR_QUERY_LIMIT = 500


def _device_id(tool_id: str, device_id: str) -> int:
    try:
        return int(device_id)
    except (TypeError, ValueError):
        raise DeviceNotFoundError(tool_id, str(device_id)) from None


def _load_partners(data: list[list[Any]]) -> dict[int, str]:
    return {int(partner_id): name for partner_id, name in data}


def _dump_partners(partners: dict[int, str]) -> list[list[Any]]:
    # JSON object keys are strings; pairs keep the ids numeric.
    return [[partner_id, name] for partner_id, name in partners.items()]


def _error_time(value: Any) -> Optional[datetime]:
    try:
        return from_unix(value)
    except (MappingError, TypeError):
        return None


class CoveBackupConnector:
    def __init__(
        self,
        config: CoveConfig,
        store: KeyValueStore,
        *,
        client: Optional[CoveClient] = None,
        cache: Optional[CacheLayer] = None,
    ):
        self.config = config
        self.store = store
        self.client = client or CoveClient(config, store)
        self.cache = cache or CacheLayer(store)
        self.history = HistoryReconstructor(self.client)
        self.recovery = RecoveryVerificationFetcher(self.client)

    @property
    def tool_id(self) -> str:
        return self.config.tool_id

    # --- Customers and devices -------------------------------------------------

    async def get_customers(self) -> list[BackupCustomer]:
        return aggregate_by_customer(await self._all_devices())

    async def get_devices(self, device_filter: Optional[DeviceFilter] = None) -> list[BackupDevice]:
        devices = await self._all_devices()
        if device_filter is None:
            return devices
        return [d for d in devices if self._matches(d, device_filter)]

    @staticmethod
    def _matches(device: BackupDevice, device_filter: DeviceFilter) -> bool:
        if device_filter.customer_id and device.customer_source_id != device_filter.customer_id:
            return False
        if device_filter.status and device.overall_status != device_filter.status:
            return False
        if device_filter.device_type:
            if device_filter.device_type == DeviceType.HOSTED_TENANT:
                if not device.is_hosted_tenant:
                    return False
            elif device.os_type != OsType(device_filter.device_type.value):
                return False
        if device_filter.data_source_type and not any(
            ds.type == device_filter.data_source_type for ds in device.data_sources
        ):
            return False
        if device_filter.search_term:
            term = device_filter.search_term.lower()
            haystacks = (device.device_name, device.computer_name, device.customer_name)
            if not any(term in (value or "").lower() for value in haystacks):
                return False
        return True

    async def get_device_by_id(self, device_id: str) -> BackupDevice:
        for device in await self._all_devices():
            if device.source_id == device_id:
                return device
        raise DeviceNotFoundError(self.tool_id, device_id)

    # --- Dashboard ---------------------------------------------------------------

    async def get_dashboard_summary(self) -> DashboardSummary:
        return await self.cache.read_through(
            keys.summary_key(self.tool_id),
            FRESHNESS_SUMMARY,
            self._build_dashboard_summary,
            dump=dump,
            load=lambda data: load(DashboardSummary, data),
        )

    async def _build_dashboard_summary(self) -> DashboardSummary:
        devices = await self._fetch_all_devices()
        # Piggyback: the summary fetch doubles as a device list refresh.
        await self.cache.set(keys.devices_key(self.tool_id), dump(devices))
        return self.summarize(devices)

    @staticmethod
    def summarize(devices: list[BackupDevice], now: Optional[datetime] = None) -> DashboardSummary:
        now = now or utc_now()
        by_status = {status.value: 0 for status in OverallStatus}
        by_device_type = DeviceTypeBreakdown()
        by_session_status = SessionStatusBreakdown()
        recency = RecencyBreakdown()
        tenants = HostedTenantSummary()

        for device in devices:
            status = device.overall_status
            by_status[status.value] += 1

            if device.is_hosted_tenant:
                by_device_type.hosted_tenants += 1
                tenants.tenant_count += 1
                tenants.total_selected_bytes += device.selected_size_bytes
                tenants.total_used_bytes += device.used_storage_bytes
                tenants.license_count += max(
                    device.license_items(DataSourceType.M365_EXCHANGE),
                    device.license_items(DataSourceType.M365_ONEDRIVE),
                )
            elif device.os_type == OsType.SERVER:
                by_device_type.servers += 1
            elif device.os_type == OsType.WORKSTATION:
                by_device_type.workstations += 1
            else:
                by_device_type.unknown += 1

            if status == OverallStatus.HEALTHY:
                by_session_status.completed += 1
            elif status == OverallStatus.WARNING:
                by_session_status.completed_with_errors += 1
            elif status == OverallStatus.FAILED:
                by_session_status.failed += 1
            elif any(
                ds.last_session_status == SessionStatus.IN_PROCESS for ds in device.data_sources
            ):
                by_session_status.in_process += 1
            else:
                by_session_status.no_backups += 1

            last_success = device.last_successful_timestamp
            if last_success is None:
                recency.no_backups += 1
            else:
                age_hours = (now - last_success).total_seconds() / 3600
                if age_hours < 1:
                    recency.under_one_hour += 1
                elif age_hours < 4:
                    recency.one_to_four_hours += 1
                elif age_hours < 24:
                    recency.four_to_twenty_four_hours += 1
                elif age_hours < 48:
                    recency.one_to_two_days += 1
                else:
                    recency.over_two_days += 1

        failed = [d for d in devices if d.overall_status == OverallStatus.FAILED]
        overdue = [d for d in devices if d.overall_status == OverallStatus.OVERDUE]
        return DashboardSummary(
            total_devices=len(devices),
            total_customers=len({d.customer_source_id for d in devices}),
            by_status=by_status,
            total_storage_bytes=sum(d.used_storage_bytes for d in devices),
            total_protected_bytes=sum(d.protected_size_bytes for d in devices),
            total_selected_bytes=sum(d.selected_size_bytes for d in devices),
            by_device_type=by_device_type,
            by_session_status=by_session_status,
            backed_up_recency=recency,
            hosted_tenants=tenants,
            failed_devices=failed[:SUMMARY_DEVICE_LIMIT],
            overdue_devices=overdue[:SUMMARY_DEVICE_LIMIT],
        )

    async def get_active_alerts(self) -> list[Alert]:
        return generate_alerts(await self._all_devices())

    async def get_storage_statistics(self, customer_id: Optional[str] = None) -> StorageStatistics:
        devices = await self._all_devices()
        if customer_id:
            devices = [d for d in devices if d.customer_source_id == customer_id]

        rows = sorted(
            (
                DeviceStorage(
                    device_id=d.source_id,
                    device_name=d.device_name,
                    used_bytes=d.used_storage_bytes,
                )
                for d in devices
            ),
            key=lambda row: row.used_bytes,
            reverse=True,
        )
        return StorageStatistics(
            total_bytes=0,
            used_bytes=sum(row.used_bytes for row in rows),
            devices=rows,
        )

    # --- Per-device detail -------------------------------------------------------

    async def get_device_session_history(
        self, device_id: str, days: int = 30
    ) -> list[SessionHistoryEntry]:
        account_id = _device_id(self.tool_id, device_id)

        async def fetch() -> list[SessionHistoryEntry]:
            root_partner_id = await self.get_root_partner_id()
            return await self.history.fetch(root_partner_id, account_id, days)

        return await self.cache.read_through(
            keys.history_key(self.tool_id, device_id, days),
            FRESHNESS_HISTORY,
            fetch,
            dump=dump,
            load=lambda data: load_list(SessionHistoryEntry, data),
            ttl_seconds=HISTORY_TTL,
        )

    async def get_device_error_details(self, device_id: str) -> list[BackupErrorDetail]:
        account_id = _device_id(self.tool_id, device_id)
        return await self.cache.read_through(
            keys.errors_key(self.tool_id, device_id),
            FRESHNESS_ERRORS,
            lambda: self._fetch_error_details(account_id),
            dump=dump,
            load=lambda data: load_list(BackupErrorDetail, data),
            stale_ok=False,
            ttl_seconds=ERRORS_TTL,
        )

    async def _fetch_error_details(self, account_id: int) -> list[BackupErrorDetail]:
        endpoint = await self._storage_node_endpoint(account_id)
        try:
            result = await self._query_errors(account_id, endpoint)
        except ConnectorError as exc:
            # The node token may have expired; rediscover and retry once.
            logger.warning("QueryErrors for %s failed, rediscovering node: %s", account_id, exc)
            await self.cache.invalidate(keys.storage_node_key(self.tool_id, account_id))
            endpoint = await self._storage_node_endpoint(account_id)
            result = await self._query_errors(account_id, endpoint)

        return [
            BackupErrorDetail(
                filename=item.get("Filename") or "",
                error_message=item.get("Text") or "",
                error_code=item.get("Code"),
                occurrence_count=item.get("Count"),
                timestamp=_error_time(item.get("Time")),
                session_id=str(item.get("SessionId", "")),
            )
            for item in result_rows(result)
        ]

    async def _query_errors(self, account_id: int, endpoint: StorageNodeEndpoint) -> Any:
        return await self.client.call_storage_node(
            endpoint.url,
            "QueryErrors",
            {
                "accountId": account_id,
                "sessionId": 0,  # all sessions
                "query": "0 != 1",  # match every error
                "orderBy": "Time DESC",
                "groupId": 0,
                "account": endpoint.account_name,
                "token": endpoint.token,
                "range": {"Offset": 0, "Size": ERROR_QUERY_LIMIT},
            },
        )

    async def _storage_node_endpoint(self, account_id: int) -> StorageNodeEndpoint:
        return await self.cache.read_through(
            keys.storage_node_key(self.tool_id, account_id),
            FRESHNESS_STORAGE_NODE,
            lambda: self._discover_storage_node(account_id),
            dump=dump,
            load=lambda data: load(StorageNodeEndpoint, data),
            stale_ok=False,
            ttl_seconds=STORAGE_NODE_TTL,
        )

    async def _discover_storage_node(self, account_id: int) -> StorageNodeEndpoint:
        endpoints = result_rows(
            await self.client.call(
                "EnumerateAccountRemoteAccessEndpoints", {"accountId": account_id}
            )
        )
        if not endpoints:
            raise ConnectorError(self.tool_id, f"No storage node endpoint for account {account_id}")

        raw_url = endpoints[0].get("WebRcgUrl") or endpoints[0].get("InternalInfoPageUrl") or ""
        parsed = urlparse(raw_url)
        if not parsed.scheme or not parsed.hostname:
            raise ConnectorError(
                self.tool_id, f"Could not parse storage node URL from: {raw_url[:100]}"
            )

        info = await self.client.call("GetAccountInfoById", {"accountId": account_id})
        if isinstance(info, dict) and isinstance(info.get("result"), dict):
            info = info["result"]
        token = (info or {}).get("Token")
        account_name = (info or {}).get("Name")
        if not token or not account_name:
            raise ConnectorError(
                self.tool_id, f"GetAccountInfoById missing Token or Name for account {account_id}"
            )

        return StorageNodeEndpoint(
            url=f"{parsed.scheme}://{parsed.hostname}",
            token=token,
            account_name=account_name,
        )

    async def get_recovery_verification(self, device_id: str) -> RecoveryVerification:
        account_id = _device_id(self.tool_id, device_id)
        return await self.cache.read_through(
            keys.recovery_key(self.tool_id, device_id),
            FRESHNESS_RECOVERY,
            lambda: self.recovery.get_recovery_verification(account_id),
            dump=dump,
            load=lambda data: load(RecoveryVerification, data),
            stale_ok=False,
            ttl_seconds=RECOVERY_TTL,
        )

    async def get_recovery_enabled_devices(self) -> list[RecoveryEnabledDevice]:
        return await self.cache.read_through(
            keys.recovery_devices_key(self.tool_id),
            FRESHNESS_RECOVERY_DEVICES,
            self.recovery.list_recovery_enabled_devices,
            dump=dump,
            load=lambda data: load_list(RecoveryEnabledDevice, data),
            stale_ok=False,
            ttl_seconds=RECOVERY_TTL,
        )

    # --- Service ---------------------------------------------------------------

    async def health_check(self) -> HealthCheckResult:
        return await self.client.health_check()

    async def get_cache_info(self) -> CacheInfo:
        devices = await self.cache.get(keys.devices_key(self.tool_id))
        summary = await self.cache.get(keys.summary_key(self.tool_id))
        return CacheInfo(
            devices_cached_at=_from_ms(devices.cached_at) if devices else None,
            summary_cached_at=_from_ms(summary.cached_at) if summary else None,
        )

    async def get_root_partner_id(self) -> int:
        key = keys.root_partner_key(self.tool_id)
        cached = await self.store.get(key)
        if cached:
            return int(cached)

        partner_id = await self.client.get_partner_id()
        await self.store.set(key, str(partner_id), ttl_seconds=ROOT_PARTNER_TTL)
        return partner_id

    async def close(self) -> None:
        await self.client.close()

    # --- Internal ----------------------------------------------------------------

    async def _all_devices(self) -> list[BackupDevice]:
        return await self.cache.read_through(
            keys.devices_key(self.tool_id),
            FRESHNESS_DEVICES,
            self._fetch_all_devices,
            dump=dump,
            load=lambda data: load_list(BackupDevice, data),
        )

    async def refresh_summary(self) -> DashboardSummary:
        summary = await self._build_dashboard_summary()
        await self.cache.set(keys.summary_key(self.tool_id), dump(summary))
        return summary

    async def _fetch_all_devices(self) -> list[BackupDevice]:
        try:
            partner_names = await self._partner_names()
        except ConnectorError as exc:
            logger.warning("Partner names unavailable, using raw ids: %s", exc)
            partner_names = {}

        root_partner_id = await self.get_root_partner_id()
        devices: list[BackupDevice] = []
        offset = 0
        while True:
            rows = result_rows(
                await self.client.call(
                    "EnumerateAccountStatistics",
                    {
                        "query": {
                            "PartnerId": root_partner_id,
                            "StartRecordNumber": offset,
                            "RecordsCount": PAGE_SIZE,
                            "Columns": DEVICE_LIST_COLUMNS,
                        }
                    },
                )
            )
            if not rows:
                break

            for row in rows:
                try:
                    devices.append(map_statistics_row(row, partner_names, tool_id=self.tool_id))
                except MappingError as exc:
                    logger.warning("Skipping account %s: %s", row.get("AccountId"), exc)

            offset += len(rows)
            if len(rows) < PAGE_SIZE:
                break

        logger.info("Fetched %d devices", len(devices))
        return devices

    async def _partner_names(self) -> dict[int, str]:
        return await self.cache.read_through(
            keys.partners_key(self.tool_id),
            FRESHNESS_PARTNERS,
            self._fetch_partner_names,
            dump=_dump_partners,
            load=_load_partners,
        )

    async def _fetch_partner_names(self) -> dict[int, str]:
        root_partner_id = await self.get_root_partner_id()
        response = await self.client.call(
            "EnumeratePartners",
            {"parentPartnerId": root_partner_id, "fields": ["Id", "Name"], "fetchRecursively": True},
        )
        return {
            partner["Id"]: partner["Name"]
            for partner in result_rows(response)
            if "Id" in partner and "Name" in partner
        }


def _from_ms(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
