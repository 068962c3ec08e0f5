"""
Session status codes and derived device health.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from cove.models import OverallStatus, SessionStatus, utc_now

STORAGE_STATUS_OFFLINE = -2
OVERDUE_AFTER = timedelta(hours=48)

SESSION_STATUS_CODES: dict[int, SessionStatus] = {
    1: SessionStatus.IN_PROCESS,
    2: SessionStatus.FAILED,
    3: SessionStatus.ABORTED,
    5: SessionStatus.COMPLETED,
    6: SessionStatus.INTERRUPTED,
    7: SessionStatus.NOT_STARTED,
    8: SessionStatus.COMPLETED_WITH_ERRORS,
    9: SessionStatus.IN_PROGRESS_WITH_FAULTS,
    10: SessionStatus.OVER_QUOTA,
    11: SessionStatus.NO_SELECTION,
    12: SessionStatus.RESTARTED,
}

FAILED_SESSIONS = frozenset({SessionStatus.FAILED, SessionStatus.ABORTED})
WARNING_SESSIONS = frozenset(
    {
        SessionStatus.COMPLETED_WITH_ERRORS,
        SessionStatus.IN_PROGRESS_WITH_FAULTS,
        SessionStatus.OVER_QUOTA,
        SessionStatus.INTERRUPTED,
    }
)
HEALTHY_SESSIONS = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.IN_PROCESS, SessionStatus.RESTARTED}
)

# Worst first. Customer rollups pick the first status any device has.
STATUS_PRIORITY: tuple[OverallStatus, ...] = (
    OverallStatus.OFFLINE,
    OverallStatus.NEVER_RAN,
    OverallStatus.FAILED,
    OverallStatus.OVERDUE,
    OverallStatus.WARNING,
    OverallStatus.HEALTHY,
    OverallStatus.UNKNOWN,
)


def map_session_status(code: Optional[int]) -> Optional[SessionStatus]:
    if code is None:
        return None
    return SESSION_STATUS_CODES.get(int(code))


def compute_overall_status(
    session_status: Optional[SessionStatus],
    last_session_timestamp: Optional[datetime],
    storage_status_code: Optional[int],
    now: Optional[datetime] = None,
) -> OverallStatus:
    """
    Derive device health. Rules are checked top to bottom, first match wins:

    1. storage link offline -> offline
    2. no status and no timestamp ever -> never_ran
    3. failed or aborted -> failed
    4. last session older than 48 hours -> overdue
    5. completed with errors, faults, over quota, interrupted -> warning
    6. completed, in process, restarted -> healthy
    7. anything else -> unknown
    """
    if storage_status_code == STORAGE_STATUS_OFFLINE:
        return OverallStatus.OFFLINE
    if session_status is None and last_session_timestamp is None:
        return OverallStatus.NEVER_RAN
    if session_status in FAILED_SESSIONS:
        return OverallStatus.FAILED
    if last_session_timestamp is not None:
        if (now or utc_now()) - last_session_timestamp > OVERDUE_AFTER:
            return OverallStatus.OVERDUE
    if session_status in WARNING_SESSIONS:
        return OverallStatus.WARNING
    if session_status in HEALTHY_SESSIONS:
        return OverallStatus.HEALTHY
    return OverallStatus.UNKNOWN


def rollup_status(counts: dict[OverallStatus, int]) -> OverallStatus:
    """
    Worst status among a customer's devices. never_ran only counts when no
    device is healthy.
    """
    for status in STATUS_PRIORITY:
        if status == OverallStatus.NEVER_RAN and counts.get(OverallStatus.HEALTHY):
            continue
        if counts.get(status):
            return status
    return OverallStatus.UNKNOWN
