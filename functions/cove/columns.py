"""
Column-code table for EnumerateAccountStatistics rows.

Rows carry their values as a list of single-key maps
(`[{"I0": 123}, {"I1": "laptop"}, ...]`). Device columns use the `I` prefix;
per-source columns are `<channel prefix><field suffix>`, e.g. `F0` is the
Files channel's last session status and `TG` the rolled-up last session time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from cove.errors import MappingError
from cove.models import DataSourceType


class Device:
    ID = "I0"
    NAME = "I1"
    CREATION_DATE = "I4"
    CUSTOMER = "I8"
    PRODUCT = "I10"
    STORAGE_LOCATION = "I11"
    USED_STORAGE = "I14"
    EMAIL = "I15"
    OS_VERSION = "I16"
    CLIENT_VERSION = "I17"
    COMPUTER_NAME = "I18"
    INTERNAL_IPS = "I19"
    EXTERNAL_IPS = "I20"
    MAC_ADDRESS = "I21"
    OS_TYPE = "I32"
    LSV_ENABLED = "I35"
    STORAGE_STATUS = "I36"
    LSV_STATUS = "I37"
    ACCOUNT_TYPE = "I59"
    ACTIVE_DATA_SOURCES = "I78"


class Stat:
    LAST_SESSION_STATUS = "0"
    SELECTED_COUNT = "1"
    PROCESSED_COUNT = "2"
    SELECTED_SIZE = "3"
    PROCESSED_SIZE = "4"
    SENT_SIZE = "5"
    PROTECTED_SIZE = "6"
    ERRORS_COUNT = "7"
    SESSION_DURATION = "A"
    COLOR_BAR = "B"
    LAST_SESSION_TIMESTAMP = "G"
    LICENSE_ITEMS = "I"
    LAST_SUCCESSFUL_TIMESTAMP = "L"


TOTAL_PREFIX = "T"


@dataclass(frozen=True)
class Channel:
    prefix: str
    type: DataSourceType
    label: str


CHANNELS: dict[str, Channel] = {
    channel.prefix: channel
    for channel in (
        Channel("F", DataSourceType.FILES, "Files & Folders"),
        Channel("S", DataSourceType.SYSTEM_STATE, "System State"),
        Channel("Q", DataSourceType.MSSQL, "MS SQL"),
        Channel("X", DataSourceType.VSS_EXCHANGE, "Exchange (VSS)"),
        Channel("N", DataSourceType.NETWORK_SHARES, "Network Shares"),
        Channel("W", DataSourceType.VMWARE, "VMware"),
        Channel("T", DataSourceType.TOTAL, "Total"),
        Channel("Z", DataSourceType.VSS_MSSQL, "MS SQL (VSS)"),
        Channel("P", DataSourceType.VSS_SHAREPOINT, "SharePoint (VSS)"),
        Channel("Y", DataSourceType.ORACLE, "Oracle"),
        Channel("H", DataSourceType.HYPERV, "Hyper-V"),
        Channel("L", DataSourceType.MYSQL, "MySQL"),
        Channel("V", DataSourceType.VDR, "Virtual Disaster Recovery"),
        Channel("B", DataSourceType.BMR, "Bare Metal Restore"),
        Channel("G", DataSourceType.M365_EXCHANGE, "M365 Exchange"),
        Channel("J", DataSourceType.M365_ONEDRIVE, "M365 OneDrive"),
    )
}

# Every channel except the rolled-up total.
SOURCE_PREFIXES = [p for p in CHANNELS if p != TOTAL_PREFIX]
SOURCE_FIELDS = ["0", "B", "L", "G", "6", "1", "2", "3", "4", "7", "A", "I"]

# EnumerateAccountHistoryStatistics rejects V, Z, P, Y, L and B.
HISTORY_PREFIXES = ["F", "S", "Q", "X", "N", "W", "H", "G", "J"]
HISTORY_FIELDS = ["0", "1", "2", "3", "4", "5", "7", "A", "G"]


def code(prefix: str, suffix: str) -> str:
    return f"{prefix}{suffix}"


def _channel_columns(prefixes: Iterable[str], fields: Iterable[str]) -> list[str]:
    fields = list(fields)
    return [code(prefix, suffix) for prefix in prefixes for suffix in fields]


DEVICE_LIST_COLUMNS = [
    Device.ID,
    Device.NAME,
    Device.CUSTOMER,
    Device.OS_VERSION,
    Device.CLIENT_VERSION,
    Device.COMPUTER_NAME,
    Device.INTERNAL_IPS,
    Device.EXTERNAL_IPS,
    Device.MAC_ADDRESS,
    Device.OS_TYPE,
    Device.ACTIVE_DATA_SOURCES,
    Device.USED_STORAGE,
    Device.STORAGE_STATUS,
    Device.LSV_ENABLED,
    Device.LSV_STATUS,
    Device.CREATION_DATE,
    Device.PRODUCT,
    Device.STORAGE_LOCATION,
    Device.EMAIL,
    Device.ACCOUNT_TYPE,
    "T0",
    "TB",
    "TL",
    "TG",
    "T3",
    "T6",
    "T7",
    *_channel_columns(SOURCE_PREFIXES, SOURCE_FIELDS),
]

HISTORY_COLUMNS = [
    Device.NAME,
    "T0",
    "T1",
    "T2",
    "T3",
    "T4",
    "T5",
    "T7",
    "TA",
    "TG",
    *_channel_columns(HISTORY_PREFIXES, HISTORY_FIELDS),
]


def extract_field(settings: Iterable[Any], column: str) -> Any:
    """Linear scan of a row's single-key maps. Returns None if absent."""
    for entry in settings or ():
        if isinstance(entry, dict) and column in entry:
            return entry[column]
    return None


def flatten_settings(settings: Iterable[Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for entry in settings or ():
        if isinstance(entry, dict):
            flat.update(entry)
    return flat


def to_number(value: Any, column: str = "") -> Optional[float]:
    """
    Raises:
        MappingError: If the value is present but not numeric.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError as exc:
            raise MappingError(f"Column {column} is not numeric: {value!r}") from exc
    if math.isnan(number):
        raise MappingError(f"Column {column} is not numeric: {value!r}")
    return number


def to_int(value: Any, column: str = "") -> Optional[int]:
    number = to_number(value, column)
    return None if number is None else int(number)


def from_unix(seconds: Optional[float]) -> Optional[datetime]:
    if not seconds or seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MappingError(f"Timestamp out of range: {seconds!r}") from exc


class StatisticsRow:
    """Typed getters over one EnumerateAccountStatistics row."""

    def __init__(self, row: dict[str, Any]):
        self.raw = row
        self.account_id = row.get("AccountId")
        self.partner_id = row.get("PartnerId")
        self.settings = row.get("Settings") or []

    def get(self, column: str) -> Any:
        return extract_field(self.settings, column)

    def text(self, column: str) -> Optional[str]:
        value = self.get(column)
        return None if value is None else f"{value}"

    def number(self, column: str) -> Optional[float]:
        return to_number(self.get(column), column)

    def integer(self, column: str) -> Optional[int]:
        return to_int(self.get(column), column)

    def timestamp(self, column: str) -> Optional[datetime]:
        return from_unix(self.number(column))
