"""
Operational alerts derived from device health.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from cove.models import Alert, AlertSeverity, BackupDevice, OverallStatus, utc_now

ALERT_CATEGORY = "availability"
ALERT_STATUS = "new"


def _hours_since(timestamp: Optional[datetime], now: datetime) -> Optional[int]:
    if timestamp is None:
        return None
    return round((now - timestamp).total_seconds() / 3600)


def _alert_for(device: BackupDevice, now: datetime) -> Optional[Alert]:
    status = device.overall_status
    who = f"{device.device_name} ({device.customer_name})"

    if status == OverallStatus.FAILED:
        kind, severity, score = "failed", AlertSeverity.CRITICAL, 9
        title = f"Backup failed: {device.device_name}"
        message = f"Last backup session failed for {who}"
    elif status == OverallStatus.OVERDUE:
        hours = _hours_since(device.last_session_timestamp, now)
        kind, severity, score = "overdue", AlertSeverity.HIGH, 7
        title = f"Backup overdue: {device.device_name}"
        message = f"No backup in {hours if hours is not None else 'unknown'} hours for {who}"
    elif status == OverallStatus.WARNING:
        kind, severity, score = "warning", AlertSeverity.MEDIUM, 5
        title = f"Backup completed with errors: {device.device_name}"
        message = f"Last backup for {who} completed with errors"
    else:
        return None

    return Alert(
        source_tool_id=device.source_tool_id,
        source_id=f"backup-{kind}-{device.source_id}",
        title=title,
        message=message,
        severity=severity,
        severity_score=score,
        category=ALERT_CATEGORY,
        status=ALERT_STATUS,
        device_hostname=device.computer_name or device.device_name,
        organization_name=device.customer_name,
        created_at=device.last_session_timestamp or now,
    )


def generate_alerts(
    devices: Iterable[BackupDevice], now: Optional[datetime] = None
) -> list[Alert]:
    """One alert per failed, overdue or warning device, most severe first."""
    now = now or utc_now()
    alerts = [alert for alert in (_alert_for(d, now) for d in devices) if alert]
    alerts.sort(key=lambda a: a.severity_score, reverse=True)
    return alerts
