"""
HTTP routes for the backup connector API. Every endpoint is read-only.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.dependencies import get_backup_connector
from backend.schemas import (
    AlertsResponse,
    CacheInfoResponse,
    CustomersResponse,
    DashboardSummaryResponse,
    DeviceResponse,
    DevicesResponse,
    ErrorDetailsResponse,
    HealthCheckResponse,
    PartnerIdResponse,
    RecoveryEnabledDevicesResponse,
    RecoveryVerificationResponse,
    SessionHistoryResponse,
    StorageStatisticsResponse,
)
from cove.connector import CoveBackupConnector
from cove.mappers import dump
from cove.models import DataSourceType, DeviceFilter, DeviceType, OverallStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backup")


@router.get("/customers", response_model=CustomersResponse)
async def list_customers(connector: CoveBackupConnector = Depends(get_backup_connector)):
    customers = await connector.get_customers()
    return CustomersResponse(customers=dump(customers))


@router.get("/devices", response_model=DevicesResponse)
async def list_devices(
    customer_id: Optional[str] = Query(None),
    status: Optional[OverallStatus] = Query(None),
    device_type: Optional[DeviceType] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    data_source_type: Optional[DataSourceType] = Query(None),
    connector: CoveBackupConnector = Depends(get_backup_connector),
):
    device_filter = DeviceFilter(
        customer_id=customer_id,
        status=status,
        device_type=device_type,
        search_term=search,
        data_source_type=data_source_type,
    )
    devices = await connector.get_devices(device_filter)
    return DevicesResponse(devices=[d.as_dict() for d in devices])


@router.get("/devices/{device_id}", response_model=DeviceResponse)
async def get_device(
    device_id: str, connector: CoveBackupConnector = Depends(get_backup_connector)
):
    device = await connector.get_device_by_id(device_id)
    return DeviceResponse(device=device.as_dict())


@router.get("/devices/{device_id}/history", response_model=SessionHistoryResponse)
async def get_device_history(
    device_id: str,
    days: int = Query(30, ge=1, le=90),
    connector: CoveBackupConnector = Depends(get_backup_connector),
):
    entries = await connector.get_device_session_history(device_id, days)
    return SessionHistoryResponse(device_id=device_id, days=days, entries=dump(entries))


@router.get("/devices/{device_id}/errors", response_model=ErrorDetailsResponse)
async def get_device_errors(
    device_id: str, connector: CoveBackupConnector = Depends(get_backup_connector)
):
    errors = await connector.get_device_error_details(device_id)
    return ErrorDetailsResponse(device_id=device_id, errors=dump(errors))


@router.get("/devices/{device_id}/recovery", response_model=RecoveryVerificationResponse)
async def get_device_recovery(
    device_id: str, connector: CoveBackupConnector = Depends(get_backup_connector)
):
    recovery = await connector.get_recovery_verification(device_id)
    return RecoveryVerificationResponse(device_id=device_id, recovery=dump(recovery))


@router.get("/recovery-devices", response_model=RecoveryEnabledDevicesResponse)
async def list_recovery_devices(
    connector: CoveBackupConnector = Depends(get_backup_connector),
):
    devices = await connector.get_recovery_enabled_devices()
    return RecoveryEnabledDevicesResponse(devices=dump(devices))


@router.get("/summary", response_model=DashboardSummaryResponse)
async def get_summary(connector: CoveBackupConnector = Depends(get_backup_connector)):
    summary = await connector.get_dashboard_summary()
    return DashboardSummaryResponse(summary=summary.as_dict())


@router.get("/alerts", response_model=AlertsResponse)
async def list_alerts(connector: CoveBackupConnector = Depends(get_backup_connector)):
    alerts = await connector.get_active_alerts()
    return AlertsResponse(alerts=dump(alerts))


@router.get("/storage", response_model=StorageStatisticsResponse)
async def get_storage(
    customer_id: Optional[str] = Query(None),
    connector: CoveBackupConnector = Depends(get_backup_connector),
):
    stats = await connector.get_storage_statistics(customer_id)
    return StorageStatisticsResponse(
        total_bytes=stats.total_bytes,
        used_bytes=stats.used_bytes,
        devices=dump(stats.devices),
    )


@router.get("/health", response_model=HealthCheckResponse)
async def health(connector: CoveBackupConnector = Depends(get_backup_connector)):
    result = await connector.health_check()
    if not result.ok:
        logger.warning("Backup connector health check failed: %s", result.message)
    return HealthCheckResponse(ok=result.ok, latency_ms=result.latency_ms, message=result.message)


@router.get("/cache-info", response_model=CacheInfoResponse)
async def cache_info(connector: CoveBackupConnector = Depends(get_backup_connector)):
    info = await connector.get_cache_info()
    return CacheInfoResponse(
        devices_cached_at=info.devices_cached_at,
        summary_cached_at=info.summary_cached_at,
    )


@router.get("/partner-id", response_model=PartnerIdResponse)
async def partner_id(connector: CoveBackupConnector = Depends(get_backup_connector)):
    return PartnerIdResponse(partner_id=await connector.get_root_partner_id())
