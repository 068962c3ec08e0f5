"""
Pydantic schemas for the backup connector API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class CustomersResponse(BaseModel):
    customers: list[dict[str, Any]]


class DevicesResponse(BaseModel):
    devices: list[dict[str, Any]]


class DeviceResponse(BaseModel):
    device: dict[str, Any]


class DashboardSummaryResponse(BaseModel):
    summary: dict[str, Any]


class AlertsResponse(BaseModel):
    alerts: list[dict[str, Any]]


class StorageStatisticsResponse(BaseModel):
    total_bytes: float
    used_bytes: float
    devices: list[dict[str, Any]]


class SessionHistoryResponse(BaseModel):
    device_id: str
    days: int
    entries: list[dict[str, Any]]


class ErrorDetailsResponse(BaseModel):
    device_id: str
    errors: list[dict[str, Any]]


class RecoveryVerificationResponse(BaseModel):
    device_id: str
    recovery: dict[str, Any]


class RecoveryEnabledDevicesResponse(BaseModel):
    devices: list[dict[str, Any]]


class HealthCheckResponse(BaseModel):
    ok: bool
    latency_ms: int
    message: Optional[str] = None


class CacheInfoResponse(BaseModel):
    devices_cached_at: Optional[datetime] = None
    summary_cached_at: Optional[datetime] = None


class PartnerIdResponse(BaseModel):
    partner_id: int
