import tempfile
import unittest
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from clinic.lifecycle import AppointmentStatus
from clinic.models import Appointment
from services import appointment_statistics, create_statistics_report, scheduling_insights

NOW = datetime(2026, 1, 5, 12, 0)


def _appointment(appointment_id: str, start: datetime, status: AppointmentStatus, **kwargs) -> Appointment:
    return Appointment(
        id=appointment_id,
        patient_id="P00001",
        doctor_id="D00001",
        start=start,
        status=status,
        consultation_fee=kwargs.pop("fee", Decimal("1000.00")),
        **kwargs,
    )


class AppointmentStatisticsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.appointments = [
            _appointment("A00001", NOW.replace(hour=9), AppointmentStatus.COMPLETED),
            _appointment("A00002", NOW.replace(hour=10), AppointmentStatus.CONFIRMED),
            _appointment("A00003", NOW.replace(hour=15), AppointmentStatus.PENDING, emergency=True),
            _appointment("A00004", NOW.replace(day=6, hour=9), AppointmentStatus.NO_SHOW,
                         appointment_type="FOLLOW_UP"),
        ]

    def test_counts(self) -> None:
        stats = appointment_statistics(self.appointments, NOW)

        self.assertEqual(stats.total, 4)
        self.assertEqual(stats.active, 2)
        self.assertEqual(stats.emergencies, 1)
        self.assertEqual(stats.today, 3)
        self.assertEqual(stats.overdue, 1)
        self.assertEqual(stats.by_status["COMPLETED"], 1)
        self.assertEqual(stats.by_status["CANCELLED"], 0)
        self.assertEqual(stats.by_type["CONSULTATION"], 3)
        self.assertEqual(stats.completed_revenue, Decimal("1000.00"))
        self.assertEqual(stats.completion_rate, 25.0)

    def test_empty_input(self) -> None:
        stats = appointment_statistics([], NOW)

        self.assertEqual(stats.total, 0)
        self.assertEqual(stats.completion_rate, 0.0)
        self.assertEqual(stats.no_show_rate, 0.0)

    def test_as_dict_is_json_friendly(self) -> None:
        payload = appointment_statistics(self.appointments, NOW).as_dict()

        self.assertEqual(payload["generated_at"], "2026-01-05T12:00:00")
        self.assertEqual(payload["completed_revenue"], "1000.00")
        self.assertEqual(payload["no_show_rate"], 25.0)


class SchedulingInsightsTests(unittest.TestCase):
    def test_peak_hour_and_cancellation_rate(self) -> None:
        appointments = [
            _appointment("A00001", NOW.replace(hour=9), AppointmentStatus.COMPLETED),
            _appointment("A00002", NOW.replace(hour=14), AppointmentStatus.CANCELLED),
            _appointment("A00003", NOW.replace(hour=14, minute=30), AppointmentStatus.PENDING),
        ]

        insights = scheduling_insights(appointments)

        self.assertEqual(insights.total, 3)
        self.assertEqual(insights.peak_hour, 14)
        self.assertEqual(insights.cancellation_rate, 33)
        self.assertEqual(insights.hourly_distribution, {9: 1, 14: 2})
        self.assertEqual(insights.as_dict()["hourly_distribution"], {"9": 1, "14": 2})

    def test_ties_and_empty_input(self) -> None:
        tied = [
            _appointment("A00001", NOW.replace(hour=15), AppointmentStatus.PENDING),
            _appointment("A00002", NOW.replace(hour=11), AppointmentStatus.PENDING),
        ]

        self.assertEqual(scheduling_insights(tied).peak_hour, 11)
        empty = scheduling_insights([])
        self.assertEqual((empty.total, empty.peak_hour, empty.cancellation_rate), (0, 10, 0))


class StatisticsReportTests(unittest.TestCase):
    def test_report_is_written_as_pdf(self) -> None:
        stats = appointment_statistics([], NOW)

        with tempfile.TemporaryDirectory() as tmpdir:
            target = Path(tmpdir) / "reports" / "stats.pdf"
            report_path = create_statistics_report(stats, target)

            self.assertEqual(report_path, target)
            self.assertTrue(report_path.exists())
            self.assertTrue(report_path.read_bytes().startswith(b"%PDF"))


if __name__ == "__main__":
    unittest.main()
