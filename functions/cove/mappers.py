"""
Normalize column-coded statistics rows into the backup domain model.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Type, TypeVar

from dacite import Config, from_dict

from cove.columns import (
    CHANNELS,
    SOURCE_PREFIXES,
    Device,
    Stat,
    StatisticsRow,
    code,
)
from cove.errors import MappingError
from cove.models import (
    BackupCustomer,
    BackupDataSource,
    BackupDevice,
    ColorBarDay,
    ColorBarStatus,
    OsType,
    OverallStatus,
    StorageStatus,
    utc_now,
)
from cove.status import map_session_status, rollup_status
from shared.json_utils import convert_keys

T = TypeVar("T")

STORAGE_STATUS_CODES: dict[int, StorageStatus] = {
    -2: StorageStatus.OFFLINE,
    -1: StorageStatus.FAILED,
    0: StorageStatus.UNDEFINED,
    50: StorageStatus.RUNNING,
    100: StorageStatus.SYNCHRONIZED,
}

OS_TYPE_CODES: dict[int, OsType] = {1: OsType.WORKSTATION, 2: OsType.SERVER}

# Color bar characters, matched case-insensitively. Anything else is "none".
COLOR_BAR_CHARS: dict[str, ColorBarStatus] = {
    **dict.fromkeys("x5", ColorBarStatus.SUCCESS),
    **dict.fromkeys("w8", ColorBarStatus.PARTIAL),
    **dict.fromkeys("f23", ColorBarStatus.FAILED),
    **dict.fromkeys("-07", ColorBarStatus.MISSED),
    **dict.fromkeys("r19", ColorBarStatus.RUNNING),
}

def _parse_datetime(value: Any) -> datetime:
    return value if isinstance(value, datetime) else datetime.fromisoformat(value)


DACITE_CONFIG = Config(
    check_types=False,
    cast=[Enum],
    type_hooks={datetime: _parse_datetime},
)


def map_storage_status(value: Optional[int]) -> Optional[StorageStatus]:
    if value is None:
        return None
    return STORAGE_STATUS_CODES.get(value)


def map_os_type(value: Optional[int]) -> Optional[OsType]:
    if value is None:
        return None
    return OS_TYPE_CODES.get(value)


def map_color_bar(encoded: Optional[str], today: Optional[date] = None) -> list[ColorBarDay]:
    """
    One entry per character. Index 0 is the oldest day, the last is today.
    """
    if not encoded or not isinstance(encoded, str):
        return []
    today = today or utc_now().date()
    last = len(encoded) - 1
    return [
        ColorBarDay(
            date=(today - timedelta(days=last - index)).isoformat(),
            status=COLOR_BAR_CHARS.get(char.lower(), ColorBarStatus.NONE),
        )
        for index, char in enumerate(encoded)
    ]


def extract_data_source(row: StatisticsRow, prefix: str) -> Optional[BackupDataSource]:
    """Returns None for channels that never reported a status or timestamp."""
    channel = CHANNELS.get(prefix)
    if channel is None:
        return None

    status_code = row.integer(code(prefix, Stat.LAST_SESSION_STATUS))
    last_session = row.number(code(prefix, Stat.LAST_SESSION_TIMESTAMP))
    if status_code is None and last_session is None:
        return None

    return BackupDataSource(
        type=channel.type,
        label=channel.label,
        last_session_status=map_session_status(status_code),
        last_session_timestamp=row.timestamp(code(prefix, Stat.LAST_SESSION_TIMESTAMP)),
        last_successful_timestamp=row.timestamp(
            code(prefix, Stat.LAST_SUCCESSFUL_TIMESTAMP)
        ),
        selected_count=row.number(code(prefix, Stat.SELECTED_COUNT)),
        processed_count=row.number(code(prefix, Stat.PROCESSED_COUNT)),
        selected_size_bytes=row.number(code(prefix, Stat.SELECTED_SIZE)),
        processed_size_bytes=row.number(code(prefix, Stat.PROCESSED_SIZE)),
        protected_size_bytes=row.number(code(prefix, Stat.PROTECTED_SIZE)),
        errors_count=row.number(code(prefix, Stat.ERRORS_COUNT)),
        session_duration_seconds=row.number(code(prefix, Stat.SESSION_DURATION)),
        license_items=row.number(code(prefix, Stat.LICENSE_ITEMS)),
        color_bar=map_color_bar(row.text(code(prefix, Stat.COLOR_BAR))),
    )


def map_statistics_row(
    raw: dict[str, Any],
    partner_names: Optional[dict[int, str]] = None,
    *,
    tool_id: str = "cove",
) -> BackupDevice:
    """
    Map one EnumerateAccountStatistics row to a device.

    Raises:
        MappingError: If the row has no account id or a numeric column holds junk.
    """
    row = StatisticsRow(raw)
    if row.account_id is None:
        raise MappingError("Row has no AccountId")

    data_sources = [
        ds for ds in (extract_data_source(row, p) for p in SOURCE_PREFIXES) if ds
    ]
    storage_status_code = row.integer(Device.STORAGE_STATUS)
    partner_id = row.partner_id
    customer_name = (partner_names or {}).get(partner_id) or row.text(Device.CUSTOMER)

    return BackupDevice(
        source_tool_id=tool_id,
        source_id=str(row.account_id),
        device_name=row.text(Device.NAME) or f"Device-{row.account_id}",
        computer_name=row.text(Device.COMPUTER_NAME) or "",
        customer_source_id=str(partner_id),
        customer_name=customer_name or f"Customer-{partner_id}",
        session_status=map_session_status(row.integer("T0")),
        last_session_timestamp=row.timestamp("TG"),
        last_successful_timestamp=row.timestamp("TL"),
        storage_status_code=storage_status_code,
        storage_status=map_storage_status(storage_status_code),
        os=row.text(Device.OS_VERSION),
        os_type=map_os_type(row.integer(Device.OS_TYPE)),
        internal_ips=row.text(Device.INTERNAL_IPS),
        external_ips=row.text(Device.EXTERNAL_IPS),
        mac_address=row.text(Device.MAC_ADDRESS),
        agent_version=row.text(Device.CLIENT_VERSION),
        email=row.text(Device.EMAIL),
        creation_date=row.timestamp(Device.CREATION_DATE),
        storage_location=row.text(Device.STORAGE_LOCATION),
        account_type=row.text(Device.ACCOUNT_TYPE),
        product_name=row.text(Device.PRODUCT),
        lsv_enabled=row.integer(Device.LSV_ENABLED) == 1,
        lsv_status=row.text(Device.LSV_STATUS),
        used_storage_bytes=row.number(Device.USED_STORAGE) or 0,
        selected_size_bytes=row.number("T3") or 0,
        protected_size_bytes=row.number("T6") or 0,
        # Derived from the channels that actually reported; I78 is display-only.
        active_data_sources=[ds.label for ds in data_sources],
        data_sources=data_sources,
        color_bar=map_color_bar(row.text("TB")),
    )


def aggregate_by_customer(devices: list[BackupDevice]) -> list[BackupCustomer]:
    by_customer: dict[str, list[BackupDevice]] = defaultdict(list)
    for device in devices:
        by_customer[device.customer_source_id].append(device)

    customers = []
    for customer_id, members in by_customer.items():
        counts = Counter(d.overall_status for d in members)
        customers.append(
            BackupCustomer(
                source_tool_id=members[0].source_tool_id,
                source_id=customer_id,
                name=members[0].customer_name or f"Customer-{customer_id}",
                total_devices=len(members),
                healthy_devices=counts[OverallStatus.HEALTHY],
                warning_devices=counts[OverallStatus.WARNING],
                failed_devices=counts[OverallStatus.FAILED],
                overdue_devices=counts[OverallStatus.OVERDUE],
                offline_devices=counts[OverallStatus.OFFLINE],
                never_ran_devices=counts[OverallStatus.NEVER_RAN],
                total_storage_bytes=sum(d.used_storage_bytes for d in members),
                overall_status=rollup_status(counts),
            )
        )
    return customers


def dump(value: Any) -> Any:
    """Dataclass (or list of them) to its camelCase cache payload."""
    if isinstance(value, list):
        return [dump(item) for item in value]
    if is_dataclass(value):
        return convert_keys(asdict(value), "snake_to_camel")
    return value


def load(data_class: Type[T], data: dict[str, Any]) -> T:
    return from_dict(
        data_class=data_class,
        data=convert_keys(data, "camel_to_snake"),
        config=DACITE_CONFIG,
    )


def load_list(data_class: Type[T], data: list[dict[str, Any]]) -> list[T]:
    return [load(data_class, item) for item in data or []]


def result_rows(result: Any) -> list[dict[str, Any]]:
    """List methods answer with either a bare list or {"result": [...]}."""
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and isinstance(result.get("result"), list):
        return result["result"]
    return []
