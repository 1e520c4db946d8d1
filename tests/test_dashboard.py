import json
import os
import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path
from unittest.mock import patch

from clinic.ids import SequentialIdAllocator
from clinic.models import PersonDetails
from datastore.csv_files import save_snapshot
from services import ClinicServices
from ui import dashboard
from ui.dashboard import DashboardRepository, filter_records, parse_iso_date

MONDAY = datetime(2026, 1, 5, 8, 0)


class DashboardTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self._tmp.name)
        services = ClinicServices(SequentialIdAllocator(), clock=lambda: MONDAY)
        rao = services.doctors.create_doctor(PersonDetails("Asha", "Rao"), "LIC-1", "Cardiology")
        cole = services.doctors.create_doctor(PersonDetails("Ben", "Cole"), "LIC-2", "Dermatology")
        patient = services.patients.create_patient(PersonDetails("John", "Smith"))
        book = services.appointments.create_appointment
        book(patient.id, rao.id, MONDAY.replace(hour=10), 30, "Chest pain")
        book(patient.id, cole.id, MONDAY.replace(hour=11), 30, "Rash", emergency=True)
        book(patient.id, rao.id, MONDAY.replace(day=6, hour=9), 30, "Follow up")
        save_snapshot(services.create_snapshot(), self.data_dir)

        self._env = patch.dict(os.environ, {"MEDITRACK_TASK_LOG": str(self.data_dir / "task_log.json")})
        self._env.start()
        self._repository = patch.object(dashboard, "repository", DashboardRepository(self.data_dir))
        self._repository.start()
        self.client = dashboard.app.test_client()

    def tearDown(self) -> None:
        self._repository.stop()
        self._env.stop()
        self._tmp.cleanup()

    def test_appointments_api_filters_by_date_and_doctor(self) -> None:
        response = self.client.get("/api/appointments?date=2026-01-05")
        records = response.get_json()

        self.assertEqual(response.status_code, 200)
        self.assertEqual([record["time"] for record in records], ["10:00", "11:00"])
        self.assertEqual(records[0]["doctor"], "Dr. Asha Rao")
        self.assertEqual(records[0]["patient"], "John Smith")

        records = self.client.get("/api/appointments?doctor=d00001").get_json()
        self.assertEqual([record["date"] for record in records], ["2026-01-05", "2026-01-06"])

    def test_tasks_endpoint(self) -> None:
        self.assertEqual(self.client.get("/tasks").get_json(), [])

        entries = [{"task": "book", "status": "success", "completed_at": "2026-01-05T08:00:00Z"}]
        (self.data_dir / "task_log.json").write_text(json.dumps(entries), encoding="utf-8")
        self.assertEqual(self.client.get("/tasks").get_json(), entries)

    def test_unreadable_task_log_is_ignored(self) -> None:
        (self.data_dir / "task_log.json").write_text("not json", encoding="utf-8")

        self.assertEqual(self.client.get("/tasks").get_json(), [])

    def test_dashboard_page_renders(self) -> None:
        response = self.client.get("/dashboard?date=2026-01-05&doctor=D00002")
        html = response.get_data(as_text=True)

        self.assertEqual(response.status_code, 200)
        self.assertIn("MediTrack Dashboard", html)
        self.assertIn("table-danger", html)
        self.assertIn("Total appointments: 3", html)
        self.assertNotIn("10:00 (30 min)", html)

    def test_dashboard_without_data(self) -> None:
        with patch.object(dashboard, "repository", DashboardRepository(self.data_dir / "empty")):
            response = self.client.get("/dashboard")

        self.assertEqual(response.status_code, 200)
        self.assertIn("No appointments found", response.get_data(as_text=True))


class HelperTests(unittest.TestCase):
    def test_parse_iso_date(self) -> None:
        self.assertEqual(parse_iso_date("2026-01-05"), date(2026, 1, 5))
        self.assertIsNone(parse_iso_date("05/01/2026"))
        self.assertIsNone(parse_iso_date(None))

    def test_filter_records_without_filters_keeps_everything(self) -> None:
        records = [{"date": "2026-01-05", "doctor_id": "D00001"}]

        self.assertEqual(filter_records(records, None, None), records)


if __name__ == "__main__":
    unittest.main()
