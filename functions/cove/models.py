"""
Normalized backup domain model.

Everything here is a plain dataclass so it can be cached as camelCase JSON
(`convert_keys(asdict(x), "snake_to_camel")`) and rebuilt with dacite.
Derived values are properties and are never part of the stored form.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, List, Optional

from shared.json_utils import convert_keys


class SessionStatus(StrEnum):
    IN_PROCESS = "in_process"
    FAILED = "failed"
    ABORTED = "aborted"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    NOT_STARTED = "not_started"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    IN_PROGRESS_WITH_FAULTS = "in_progress_with_faults"
    OVER_QUOTA = "over_quota"
    NO_SELECTION = "no_selection"
    RESTARTED = "restarted"


class OverallStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    FAILED = "failed"
    OVERDUE = "overdue"
    OFFLINE = "offline"
    NEVER_RAN = "never_ran"
    UNKNOWN = "unknown"


class ColorBarStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    MISSED = "missed"
    RUNNING = "running"
    NONE = "none"


class DataSourceType(StrEnum):
    FILES = "files"
    SYSTEM_STATE = "system_state"
    MSSQL = "mssql"
    VSS_EXCHANGE = "vss_exchange"
    NETWORK_SHARES = "network_shares"
    VMWARE = "vmware"
    TOTAL = "total"
    VSS_MSSQL = "vss_mssql"
    VSS_SHAREPOINT = "vss_sharepoint"
    ORACLE = "oracle"
    HYPERV = "hyperv"
    MYSQL = "mysql"
    VDR = "vdr"
    BMR = "bmr"
    M365_EXCHANGE = "m365_exchange"
    M365_ONEDRIVE = "m365_onedrive"


# Cloud-mailbox sources; a device with one of these and no OS is a hosted tenant.
HOSTED_TENANT_SOURCES = frozenset(
    {DataSourceType.M365_EXCHANGE, DataSourceType.M365_ONEDRIVE}
)


class StorageStatus(StrEnum):
    OFFLINE = "offline"
    FAILED = "failed"
    UNDEFINED = "undefined"
    RUNNING = "running"
    SYNCHRONIZED = "synchronized"


class OsType(StrEnum):
    WORKSTATION = "workstation"
    SERVER = "server"


class DeviceType(StrEnum):
    """Device classes accepted by the device filter."""

    WORKSTATION = "workstation"
    SERVER = "server"
    HOSTED_TENANT = "hosted_tenant"


class AlertSeverity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class ColorBarDay:
    date: str  # YYYY-MM-DD
    status: ColorBarStatus


@dataclass
class BackupDataSource:
    type: DataSourceType
    label: str
    last_session_status: Optional[SessionStatus] = None
    last_session_timestamp: Optional[datetime] = None
    last_successful_timestamp: Optional[datetime] = None
    selected_count: Optional[float] = None
    processed_count: Optional[float] = None
    selected_size_bytes: Optional[float] = None
    processed_size_bytes: Optional[float] = None
    protected_size_bytes: Optional[float] = None
    errors_count: Optional[float] = None
    session_duration_seconds: Optional[float] = None
    license_items: Optional[float] = None
    color_bar: List[ColorBarDay] = field(default_factory=list)


@dataclass
class BackupDevice:
    """
    One backed-up endpoint or cloud-mailbox tenant.

    The overall status is recomputed from the stored session status, last
    session timestamp and storage status code on every read.
    """

    source_tool_id: str
    source_id: str
    device_name: str
    computer_name: str
    customer_source_id: str
    customer_name: str
    session_status: Optional[SessionStatus] = None
    last_session_timestamp: Optional[datetime] = None
    last_successful_timestamp: Optional[datetime] = None
    storage_status_code: Optional[int] = None
    storage_status: Optional[StorageStatus] = None
    os: Optional[str] = None
    os_type: Optional[OsType] = None
    internal_ips: Optional[str] = None
    external_ips: Optional[str] = None
    mac_address: Optional[str] = None
    agent_version: Optional[str] = None
    email: Optional[str] = None
    creation_date: Optional[datetime] = None
    storage_location: Optional[str] = None
    account_type: Optional[str] = None
    product_name: Optional[str] = None
    lsv_enabled: bool = False
    lsv_status: Optional[str] = None
    used_storage_bytes: float = 0
    selected_size_bytes: float = 0
    protected_size_bytes: float = 0
    active_data_sources: List[str] = field(default_factory=list)
    data_sources: List[BackupDataSource] = field(default_factory=list)
    color_bar: List[ColorBarDay] = field(default_factory=list)

    @property
    def overall_status(self) -> OverallStatus:
        from cove.status import compute_overall_status

        return compute_overall_status(
            self.session_status, self.last_session_timestamp, self.storage_status_code
        )

    @property
    def is_hosted_tenant(self) -> bool:
        return self.os_type is None and any(
            ds.type in HOSTED_TENANT_SOURCES for ds in self.data_sources
        )

    def license_items(self, source_type: DataSourceType) -> float:
        for ds in self.data_sources:
            if ds.type == source_type:
                return ds.license_items or 0
        return 0

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["overall_status"] = self.overall_status
        data["is_hosted_tenant"] = self.is_hosted_tenant
        return convert_keys(data, "snake_to_camel")


@dataclass
class BackupCustomer:
    source_tool_id: str
    source_id: str
    name: str
    total_devices: int
    healthy_devices: int
    warning_devices: int
    failed_devices: int
    overdue_devices: int
    offline_devices: int
    never_ran_devices: int
    total_storage_bytes: float
    overall_status: OverallStatus


@dataclass
class DeviceTypeBreakdown:
    servers: int = 0
    workstations: int = 0
    hosted_tenants: int = 0
    unknown: int = 0


@dataclass
class SessionStatusBreakdown:
    completed: int = 0
    completed_with_errors: int = 0
    in_process: int = 0
    failed: int = 0
    no_backups: int = 0


@dataclass
class RecencyBreakdown:
    """Devices bucketed by age of their last successful backup."""

    under_one_hour: int = 0
    one_to_four_hours: int = 0
    four_to_twenty_four_hours: int = 0
    one_to_two_days: int = 0
    over_two_days: int = 0
    no_backups: int = 0


@dataclass
class HostedTenantSummary:
    tenant_count: int = 0
    license_count: float = 0
    total_selected_bytes: float = 0
    total_used_bytes: float = 0


@dataclass
class DashboardSummary:
    total_devices: int
    total_customers: int
    by_status: dict[str, int]
    total_storage_bytes: float
    total_protected_bytes: float
    total_selected_bytes: float
    by_device_type: DeviceTypeBreakdown
    by_session_status: SessionStatusBreakdown
    backed_up_recency: RecencyBreakdown
    hosted_tenants: HostedTenantSummary
    failed_devices: List[BackupDevice] = field(default_factory=list)
    overdue_devices: List[BackupDevice] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = convert_keys(asdict(self), "snake_to_camel")
        data["byStatus"] = dict(self.by_status)  # keyed by status value
        data["failedDevices"] = [d.as_dict() for d in self.failed_devices]
        data["overdueDevices"] = [d.as_dict() for d in self.overdue_devices]
        return data


@dataclass(frozen=True)
class SessionHistoryEntry:
    timestamp: datetime
    data_source_type: DataSourceType
    data_source_label: str
    status: Optional[SessionStatus] = None
    duration_seconds: Optional[float] = None
    selected_count: Optional[float] = None
    processed_count: Optional[float] = None
    selected_size_bytes: Optional[float] = None
    processed_size_bytes: Optional[float] = None
    transferred_size_bytes: Optional[float] = None
    errors_count: Optional[float] = None


@dataclass
class BackupErrorDetail:
    filename: str
    error_message: str
    error_code: Optional[int]
    occurrence_count: Optional[int]
    timestamp: Optional[datetime]
    session_id: str


@dataclass
class StorageNodeEndpoint:
    url: str
    token: str
    account_name: str


@dataclass
class SystemEvent:
    event_id: Optional[int]
    level: Optional[str]
    message: Optional[str]
    provider: Optional[str]
    timestamp: Optional[str]


@dataclass
class RecoveryColorbarEntry:
    status: str
    session_id: str
    backup_timestamp: Optional[datetime]
    recovery_timestamp: Optional[datetime]


@dataclass
class RecoveryVerification:
    available: bool
    boot_status: Optional[str] = None
    recovery_status: Optional[str] = None
    backup_session_timestamp: Optional[datetime] = None
    recovery_session_timestamp: Optional[datetime] = None
    recovery_duration_seconds: Optional[float] = None
    plan_name: Optional[str] = None
    restore_format: Optional[str] = None
    boot_check_frequency: Optional[str] = None
    screenshot_url: Optional[str] = None
    stopped_services: List[str] = field(default_factory=list)
    system_events: List[SystemEvent] = field(default_factory=list)
    colorbar: List[RecoveryColorbarEntry] = field(default_factory=list)

    @classmethod
    def not_available(cls) -> "RecoveryVerification":
        return cls(available=False)


@dataclass
class RecoveryEnabledDevice:
    device_id: str
    type: str
    status: str
    plan_name: str
    target_type: str


@dataclass
class DeviceStorage:
    device_id: str
    device_name: str
    used_bytes: float


@dataclass
class StorageStatistics:
    total_bytes: float  # 0: the service does not expose allocated capacity
    used_bytes: float
    devices: List[DeviceStorage] = field(default_factory=list)


@dataclass
class Alert:
    source_tool_id: str
    source_id: str
    title: str
    message: str
    severity: AlertSeverity
    severity_score: int
    category: str
    status: str
    device_hostname: str
    organization_name: str
    created_at: datetime


@dataclass
class HealthCheckResult:
    ok: bool
    latency_ms: int
    message: Optional[str] = None


@dataclass
class DeviceFilter:
    customer_id: Optional[str] = None
    status: Optional[OverallStatus] = None
    device_type: Optional[DeviceType] = None
    search_term: Optional[str] = None
    data_source_type: Optional[DataSourceType] = None


@dataclass
class CacheInfo:
    devices_cached_at: Optional[datetime] = None
    summary_cached_at: Optional[datetime] = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
