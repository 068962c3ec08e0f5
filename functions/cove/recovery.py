"""
Disaster-recovery test results from the DRaaS REST API.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import logging
import zlib
from datetime import datetime
from typing import Any, Optional

from cove.client import CoveClient
from cove.columns import from_unix, to_number
from cove.errors import ArtifactDecodeError, ConnectorError, MappingError
from cove.models import (
    RecoveryColorbarEntry,
    RecoveryEnabledDevice,
    RecoveryVerification,
    SystemEvent,
)

logger = logging.getLogger(__name__)

RECOVERY_PLAN_TYPES = "RECOVERY_TESTING,SELF_HOSTED,AZURE_SELF_HOSTED,ESXI_SELF_HOSTED"
ARTIFACT_TYPES = "screenshot,system_log"
DEFAULT_SCREENSHOT_TYPE = "image/png"

TEMPORARY_URL_REQUEST = {
    "data": {
        "type": "FileTemporaryUrl",
        "attributes": {"map": None, "encoder": {}, "updates": None, "cloneFrom": None},
    }
}

DAY_SECONDS = 86_400
HOUR_SECONDS = 3_600


def format_boot_frequency(value: Optional[int]) -> Optional[str]:
    """
    0-2 are session-based settings; larger values are intervals in seconds.
    """
    if value is None:
        return None
    if value == 0:
        return "Each recovery session"
    if value == 1:
        return "Every other session"
    if value == 2:
        return "Every 3rd session"
    if value >= DAY_SECONDS:
        days = round(value / DAY_SECONDS)
        if days == 1:
            return "Daily"
        if days == 7:
            return "Weekly"
        if 28 <= days <= 31:
            return "Monthly"
        return f"Every {days} days"
    if value >= HOUR_SECONDS:
        hours = round(value / HOUR_SECONDS)
        return f"Every {hours} hour{'s' if hours > 1 else ''}"
    return f"Every {value + 1} sessions"


def decode_system_log(raw: bytes) -> dict[str, Any]:
    """
    The .info artifact is usually gzipped JSON, but plain and base64-wrapped
    JSON have been seen too.

    Raises:
        ArtifactDecodeError: If none of the encodings yields a JSON object.
    """
    try:
        return _json_object(gzip.decompress(raw).decode("utf-8"))
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError):
        pass

    text = raw.decode("utf-8", errors="replace")
    try:
        return _json_object(text)
    except ValueError:
        pass

    try:
        return _json_object(base64.b64decode(text).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ArtifactDecodeError("System log is not gzip, JSON or base64 JSON") from exc


def _json_object(text: str) -> dict[str, Any]:
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError("System log is not a JSON object")
    return value


def to_data_url(body: bytes, content_type: Optional[str]) -> str:
    encoded = base64.b64encode(body).decode("ascii")
    return f"data:{content_type or DEFAULT_SCREENSHOT_TYPE};base64,{encoded}"


def _epoch(value: Any) -> Optional[datetime]:
    try:
        return from_unix(to_number(value))
    except MappingError:
        return None


def _boot_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return "success" if value.lower() == "success" else "failed"


class RecoveryVerificationFetcher:
    def __init__(self, client: CoveClient):
        self.client = client

    async def get_recovery_verification(self, device_id: int) -> RecoveryVerification:
        response = await self.client.draas_get(
            "/dashboard/",
            {
                "filter[backup_cloud_device_id.eq]": str(device_id),
                "filter[type.in]": RECOVERY_PLAN_TYPES,
            },
        )
        records = (response or {}).get("data") or []
        if not records:
            return RecoveryVerification.not_available()

        stats = records[0].get("attributes") or {}
        verification = RecoveryVerification(
            available=True,
            boot_status=_boot_status(stats.get("last_boot_test_status")),
            recovery_status=stats.get("current_recovery_status"),
            backup_session_timestamp=_epoch(
                stats.get("last_boot_test_backup_session_timestamp")
            ),
            recovery_session_timestamp=_epoch(
                stats.get("last_boot_test_recovery_session_timestamp")
            ),
            recovery_duration_seconds=stats.get("last_recovery_duration_sec"),
            plan_name=stats.get("plan_name"),
            restore_format=stats.get("recovery_target_type"),
            boot_check_frequency=format_boot_frequency(stats.get("device_boot_frequency")),
            colorbar=[
                RecoveryColorbarEntry(
                    status=entry.get("status", ""),
                    session_id=str(entry.get("session_id", "")),
                    backup_timestamp=_epoch(entry.get("backup_session_timestamp")),
                    recovery_timestamp=_epoch(entry.get("recovery_session_timestamp")),
                )
                for entry in stats.get("colorbar") or []
            ],
        )

        session_id = stats.get("last_recovery_session_id")
        if session_id and stats.get("last_recovery_screenshot_presented"):
            await self._attach_artifacts(verification, session_id)
        return verification

    async def _attach_artifacts(self, verification: RecoveryVerification, session_id: str) -> None:
        """Best effort: any failure leaves the record without that artifact."""
        try:
            files = await self.client.draas_get(
                f"/sessions/{session_id}/files/", {"filter[file_type.in]": ARTIFACT_TYPES}
            )
        except ConnectorError as exc:
            logger.warning("Recovery session %s: listing artifacts failed: %s", session_id, exc)
            return

        for item in (files or {}).get("data") or []:
            file_type = (item.get("attributes") or {}).get("file_type")
            try:
                url = await self._temporary_url(session_id, item.get("id"))
                if not url:
                    continue
                if file_type == "screenshot":
                    body, content_type = await self.client.fetch_artifact(url)
                    verification.screenshot_url = to_data_url(body, content_type)
                elif file_type == "system_log":
                    body, _ = await self.client.fetch_artifact(url)
                    self._apply_system_log(verification, decode_system_log(body))
            except (ConnectorError, ArtifactDecodeError) as exc:
                logger.warning(
                    "Recovery session %s: %s artifact unavailable: %s", session_id, file_type, exc
                )

    async def _temporary_url(self, session_id: str, file_id: str) -> Optional[str]:
        response = await self.client.draas_post(
            f"/sessions/{session_id}/files/{file_id}/get-temporary-url/",
            TEMPORARY_URL_REQUEST,
        )
        return (((response or {}).get("data") or {}).get("attributes") or {}).get("url")

    @staticmethod
    def _apply_system_log(verification: RecoveryVerification, log: dict[str, Any]) -> None:
        system_info = log.get("VmSystemInfo") or {}
        verification.stopped_services = list(
            system_info.get("StoppedServicesWithAutostart") or []
        )
        verification.system_events = [
            SystemEvent(
                event_id=record.get("EventID"),
                level=record.get("Level"),
                message=record.get("Message"),
                provider=record.get("ProviderName"),
                timestamp=record.get("TimeCreated"),
            )
            for record in system_info.get("SystemLogRecords") or []
        ]

    async def list_recovery_enabled_devices(self) -> list[RecoveryEnabledDevice]:
        response = await self.client.draas_get(
            "/dashboard/", {"filter[type.in]": RECOVERY_PLAN_TYPES}
        )
        devices = []
        for record in (response or {}).get("data") or []:
            stats = record.get("attributes") or {}
            devices.append(
                RecoveryEnabledDevice(
                    device_id=str(stats.get("backup_cloud_device_id")),
                    type=stats.get("type") or "",
                    status=stats.get("current_recovery_status") or "unknown",
                    plan_name=stats.get("plan_name") or "",
                    target_type=stats.get("recovery_target_type") or "",
                )
            )
        return devices
