import unittest
from datetime import datetime, timedelta, timezone

from cove.alerts import generate_alerts
from cove.models import AlertSeverity, BackupDevice, SessionStatus

NOW = datetime.now(timezone.utc)


def device(device_id, session_status, hours_ago=1.0, storage_code=100):
    return BackupDevice(
        source_tool_id="cove",
        source_id=str(device_id),
        device_name=f"dev-{device_id}",
        computer_name="",
        customer_source_id="10",
        customer_name="Acme",
        session_status=session_status,
        last_session_timestamp=NOW - timedelta(hours=hours_ago),
        storage_status_code=storage_code,
    )


class GenerateAlertsTest(unittest.TestCase):
    def test_one_alert_per_unhealthy_device(self):
        alerts = generate_alerts(
            [
                device(1, SessionStatus.COMPLETED),
                device(2, SessionStatus.COMPLETED_WITH_ERRORS),
                device(3, SessionStatus.FAILED),
                device(4, SessionStatus.COMPLETED, hours_ago=72),
                device(5, SessionStatus.FAILED, storage_code=-2),
            ],
            now=NOW,
        )

        self.assertEqual(
            [(a.source_id, a.severity, a.severity_score) for a in alerts],
            [
                ("backup-failed-3", AlertSeverity.CRITICAL, 9),
                ("backup-overdue-4", AlertSeverity.HIGH, 7),
                ("backup-warning-2", AlertSeverity.MEDIUM, 5),
            ],
        )

    def test_overdue_message_reports_hours(self):
        (alert,) = generate_alerts([device(4, SessionStatus.COMPLETED, hours_ago=72)], now=NOW)

        self.assertIn("No backup in 72 hours", alert.message)
        self.assertEqual(alert.organization_name, "Acme")
        self.assertEqual(alert.device_hostname, "dev-4")
        self.assertEqual(alert.status, "new")

    def test_healthy_fleet_has_no_alerts(self):
        self.assertEqual(generate_alerts([device(1, SessionStatus.COMPLETED)], now=NOW), [])


if __name__ == "__main__":
    unittest.main()
