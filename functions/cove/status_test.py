import itertools
import unittest
from datetime import datetime, timedelta, timezone
from typing import Optional

from cove.models import OverallStatus, SessionStatus
from cove.status import compute_overall_status, map_session_status, rollup_status

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

TIMESTAMPS = {
    "none": None,
    "recent": NOW - timedelta(hours=2),
    "edge": NOW - timedelta(hours=48),
    "old": NOW - timedelta(hours=49),
}
STORAGE_CODES = [None, -2, -1, 0, 50, 100]
SESSION_STATUSES = [None, *SessionStatus]


def expected_status(
    session: Optional[SessionStatus], ts: Optional[datetime], storage: Optional[int]
) -> OverallStatus:
    if storage == -2:
        return OverallStatus.OFFLINE
    if session is None and ts is None:
        return OverallStatus.NEVER_RAN
    if session in (SessionStatus.FAILED, SessionStatus.ABORTED):
        return OverallStatus.FAILED
    if ts is not None and NOW - ts > timedelta(hours=48):
        return OverallStatus.OVERDUE
    if session in (
        SessionStatus.COMPLETED_WITH_ERRORS,
        SessionStatus.IN_PROGRESS_WITH_FAULTS,
        SessionStatus.OVER_QUOTA,
        SessionStatus.INTERRUPTED,
    ):
        return OverallStatus.WARNING
    if session in (SessionStatus.COMPLETED, SessionStatus.IN_PROCESS, SessionStatus.RESTARTED):
        return OverallStatus.HEALTHY
    return OverallStatus.UNKNOWN


class ComputeOverallStatusTest(unittest.TestCase):
    def test_every_combination(self):
        for session, ts_name, storage in itertools.product(
            SESSION_STATUSES, TIMESTAMPS, STORAGE_CODES
        ):
            ts = TIMESTAMPS[ts_name]
            with self.subTest(session=session, ts=ts_name, storage=storage):
                self.assertEqual(
                    compute_overall_status(session, ts, storage, NOW),
                    expected_status(session, ts, storage),
                )

    def test_offline_beats_failed(self):
        self.assertEqual(
            compute_overall_status(SessionStatus.FAILED, TIMESTAMPS["recent"], -2, NOW),
            OverallStatus.OFFLINE,
        )

    def test_failed_beats_overdue(self):
        self.assertEqual(
            compute_overall_status(SessionStatus.FAILED, TIMESTAMPS["old"], 100, NOW),
            OverallStatus.FAILED,
        )

    def test_exactly_48_hours_is_not_overdue(self):
        self.assertEqual(
            compute_overall_status(SessionStatus.COMPLETED, TIMESTAMPS["edge"], 100, NOW),
            OverallStatus.HEALTHY,
        )

    def test_not_started_with_timestamp_is_unknown(self):
        self.assertEqual(
            compute_overall_status(SessionStatus.NOT_STARTED, TIMESTAMPS["recent"], 100, NOW),
            OverallStatus.UNKNOWN,
        )


class MapSessionStatusTest(unittest.TestCase):
    def test_known_codes(self):
        self.assertEqual(map_session_status(5), SessionStatus.COMPLETED)
        self.assertEqual(map_session_status(8), SessionStatus.COMPLETED_WITH_ERRORS)
        self.assertEqual(map_session_status(2), SessionStatus.FAILED)

    def test_unknown_and_missing(self):
        self.assertIsNone(map_session_status(4))
        self.assertIsNone(map_session_status(None))


class RollupStatusTest(unittest.TestCase):
    def test_worst_status_wins(self):
        counts = {OverallStatus.HEALTHY: 3, OverallStatus.FAILED: 1, OverallStatus.WARNING: 2}
        self.assertEqual(rollup_status(counts), OverallStatus.FAILED)

    def test_offline_is_worst(self):
        counts = {OverallStatus.OFFLINE: 1, OverallStatus.FAILED: 4}
        self.assertEqual(rollup_status(counts), OverallStatus.OFFLINE)

    def test_never_ran_ignored_when_something_is_healthy(self):
        counts = {OverallStatus.NEVER_RAN: 2, OverallStatus.HEALTHY: 1}
        self.assertEqual(rollup_status(counts), OverallStatus.HEALTHY)

    def test_never_ran_counts_without_healthy_devices(self):
        counts = {OverallStatus.NEVER_RAN: 1, OverallStatus.WARNING: 1}
        self.assertEqual(rollup_status(counts), OverallStatus.NEVER_RAN)

    def test_empty(self):
        self.assertEqual(rollup_status({}), OverallStatus.UNKNOWN)


if __name__ == "__main__":
    unittest.main()
