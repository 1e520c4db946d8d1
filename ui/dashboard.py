"""Read-only dashboard for MediTrack.

This module exposes a small Flask application over the CSV data directory
written by the command line tools. It shows the day's appointments per doctor,
the appointment statistics and the command task log. Missing files are
tolerated so the application can run before any data has been saved.
"""
from __future__ import annotations

from datetime import date, datetime
import json
import os
from pathlib import Path
from typing import Iterable, List, MutableMapping, Optional, Sequence

from flask import Flask, Response, jsonify, render_template_string, request

from clinic import settings
from datastore.csv_files import ClinicSnapshot, load_snapshot
from services.reports import appointment_statistics

DATE_FORMAT = "%Y-%m-%d"


class DashboardRepository:
    """Repository responsible for loading dashboard data from disk."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self._data_dir = data_dir

    @property
    def data_dir(self) -> Path:
        return self._data_dir or settings.data_dir()

    def load(self) -> ClinicSnapshot:
        return load_snapshot(self.data_dir)

    def get_task_log(self) -> List[MutableMapping[str, object]]:
        log_file = settings.task_log_path(self.data_dir)
        if not log_file.exists():
            return []
        try:
            with log_file.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (json.JSONDecodeError, OSError):
            return []
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, MutableMapping)]
        return []

    def get_appointments(self, snapshot: Optional[ClinicSnapshot] = None) -> List[MutableMapping[str, object]]:
        snapshot = snapshot or self.load()
        doctors = {doctor.id: doctor for doctor in snapshot.doctors.values()}
        patients = {patient.id: patient for patient in snapshot.patients.values()}
        records: List[MutableMapping[str, object]] = []
        for appointment in sorted(snapshot.appointments.values(), key=lambda item: (item.start, item.id)):
            doctor = doctors.get(appointment.doctor_id)
            patient = patients.get(appointment.patient_id)
            records.append(
                {
                    "id": appointment.id,
                    "date": appointment.start.strftime(DATE_FORMAT),
                    "time": appointment.start.strftime("%H:%M"),
                    "duration_minutes": appointment.duration_minutes,
                    "doctor_id": appointment.doctor_id,
                    "doctor": doctor.full_name if doctor else appointment.doctor_id,
                    "patient_id": appointment.patient_id,
                    "patient": patient.person.full_name if patient else appointment.patient_id,
                    "status": appointment.status.name,
                    "type": appointment.appointment_type,
                    "emergency": appointment.emergency,
                    "reason": appointment.reason,
                }
            )
        return records


def parse_iso_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError:
        return None


def filter_records(
    records: Sequence[MutableMapping[str, object]],
    target_date: date | None,
    doctor_id: str | None,
) -> List[MutableMapping[str, object]]:
    doctor_normalized = doctor_id.lower() if doctor_id else None
    filtered: List[MutableMapping[str, object]] = []
    for record in records:
        record_date = parse_iso_date(str(record.get("date")))
        record_doctor = str(record.get("doctor_id", ""))
        if target_date and record_date != target_date:
            continue
        if doctor_normalized and record_doctor.lower() != doctor_normalized:
            continue
        filtered.append(record)
    return filtered


def collect_doctors(records: Iterable[MutableMapping[str, object]]) -> List[MutableMapping[str, str]]:
    seen = set()
    doctors: List[MutableMapping[str, str]] = []
    for record in records:
        doctor_id = str(record.get("doctor_id", "")).strip()
        if doctor_id and doctor_id not in seen:
            doctors.append({"id": doctor_id, "name": str(record.get("doctor", doctor_id))})
            seen.add(doctor_id)
    return sorted(doctors, key=lambda doctor: doctor["name"])


def build_dashboard_context(
    repo: DashboardRepository,
    target_date: date | None,
    doctor_id: str | None,
) -> MutableMapping[str, object]:
    snapshot = repo.load()
    appointments_all = repo.get_appointments(snapshot)
    appointments = filter_records(appointments_all, target_date, doctor_id)
    stats = appointment_statistics(snapshot.appointments.values())

    return {
        "filters": {
            "date": target_date.strftime(DATE_FORMAT) if target_date else "",
            "doctor": doctor_id or "",
            "available_doctors": collect_doctors(appointments_all),
        },
        "appointments": appointments,
        "statistics": stats.as_dict(),
        "logs": repo.get_task_log(),
        "application_name": settings.APPLICATION_NAME,
    }


app = Flask(__name__)
repository = DashboardRepository()

dashboard_template = """
<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\">
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
    <meta http-equiv=\"refresh\" content=\"60\">
    <title>{{ application_name }} Dashboard</title>
    <link
      href=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css\"
      rel=\"stylesheet\"
      integrity=\"sha384-QWTKZyjpPEjISv5WaRU9OFeRpok6YctnYmDr5pNlyT2bRjXh0JMhjY6hW+ALEwIH\"
      crossorigin=\"anonymous\"
    >
  </head>
  <body class=\"bg-light\">
    <nav class=\"navbar navbar-expand-lg navbar-dark bg-primary\">
      <div class=\"container-fluid\">
        <a class=\"navbar-brand\" href=\"#\">{{ application_name }} Dashboard</a>
      </div>
    </nav>
    <main class=\"container my-4\">
      <section class=\"mb-4\">
        <form class=\"row gy-2 gx-3 align-items-center\" method=\"get\" action=\"/dashboard\" aria-label=\"Dashboard filters\">
          <div class=\"col-md-3\">
            <label for=\"filter-date\" class=\"form-label\">Date</label>
            <input
              id=\"filter-date\"
              name=\"date\"
              type=\"date\"
              class=\"form-control\"
              value=\"{{ filters.date }}\"
            >
          </div>
          <div class=\"col-md-3\">
            <label for=\"filter-doctor\" class=\"form-label\">Doctor</label>
            <select id=\"filter-doctor\" name=\"doctor\" class=\"form-select\">
              <option value=\"\">All Doctors</option>
              {% for option in filters.available_doctors %}
                <option value=\"{{ option.id }}\" {% if option.id == filters.doctor %}selected{% endif %}>{{ option.name }}</option>
              {% endfor %}
            </select>
          </div>
          <div class=\"col-md-3 align-self-end\">
            <button type=\"submit\" class=\"btn btn-primary w-100\">Apply Filters</button>
          </div>
        </form>
      </section>
      <section class=\"row g-4\">
        <div class=\"col-lg-8\">
          <div class=\"card shadow-sm h-100\">
            <div class=\"card-header bg-success text-white\">Appointments</div>
            <div class=\"card-body\">
              {% if appointments %}
                <div class=\"table-responsive\">
                  <table class=\"table table-sm table-striped\">
                    <thead>
                      <tr>
                        <th scope=\"col\">Time</th>
                        <th scope=\"col\">Patient</th>
                        <th scope=\"col\">Doctor</th>
                        <th scope=\"col\">Type</th>
                        <th scope=\"col\">Status</th>
                      </tr>
                    </thead>
                    <tbody>
                      {% for appointment in appointments %}
                        <tr {% if appointment.emergency %}class=\"table-danger\"{% endif %}>
                          <td>{{ appointment.time }} ({{ appointment.duration_minutes }} min)</td>
                          <td>{{ appointment.patient or '-' }}</td>
                          <td>{{ appointment.doctor or '-' }}</td>
                          <td>{{ appointment.type }}</td>
                          <td>{{ appointment.status }}</td>
                        </tr>
                      {% endfor %}
                    </tbody>
                  </table>
                </div>
              {% else %}
                <p class=\"text-muted mb-0\">No appointments found for the selected filters.</p>
              {% endif %}
            </div>
          </div>
        </div>
        <div class=\"col-lg-4\">
          <div class=\"card shadow-sm h-100\">
            <div class=\"card-header bg-info text-white\">Statistics</div>
            <div class=\"card-body\">
              <ul class=\"list-unstyled mb-0\">
                <li>Total appointments: {{ statistics.total }}</li>
                <li>Active: {{ statistics.active }}</li>
                <li>Emergencies: {{ statistics.emergencies }}</li>
                <li>Overdue: {{ statistics.overdue }}</li>
                <li>Completion rate: {{ statistics.completion_rate }}%</li>
                <li>No-show rate: {{ statistics.no_show_rate }}%</li>
                <li>Completed revenue: {{ statistics.completed_revenue }}</li>
              </ul>
            </div>
          </div>
        </div>
      </section>
      <section class=\"mt-5\">
        <div class=\"card shadow-sm\">
          <div class=\"card-header bg-secondary text-white\">Task Log</div>
          <div class=\"card-body\">
            {% if logs %}
              <div class=\"table-responsive\">
                <table class=\"table table-sm table-striped\">
                  <thead>
                    <tr>
                      <th scope=\"col\">Completed</th>
                      <th scope=\"col\">Task</th>
                      <th scope=\"col\">Status</th>
                      <th scope=\"col\">Message</th>
                    </tr>
                  </thead>
                  <tbody>
                    {% for log in logs %}
                      <tr>
                        <td>{{ log.completed_at or '-' }}</td>
                        <td>{{ log.task or '-' }}</td>
                        <td>{{ log.status or '-' }}</td>
                        <td>{{ log.message or '-' }}</td>
                      </tr>
                    {% endfor %}
                  </tbody>
                </table>
              </div>
            {% else %}
              <p class=\"text-muted mb-0\">No task log entries available.</p>
            {% endif %}
          </div>
        </div>
      </section>
    </main>
    <script
      src=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/js/bootstrap.bundle.min.js\"
      integrity=\"sha384-YvpcrYf0tY3lHB60NNkmXc5s9fDVZLESaAA55NDzOxhy9GkcIdslK1eN7N6jIeHz\"
      crossorigin=\"anonymous\"
    ></script>
  </body>
</html>
"""


@app.route("/tasks", methods=["GET"])
def tasks() -> Response:
    """Return command task log entries as JSON."""
    return jsonify(repository.get_task_log())


@app.route("/api/appointments", methods=["GET"])
def appointments_api() -> Response:
    target_date = parse_iso_date(request.args.get("date"))
    doctor_id = request.args.get("doctor") or None
    return jsonify(filter_records(repository.get_appointments(), target_date, doctor_id))


@app.route("/dashboard", methods=["GET"])
def dashboard() -> str:
    target_date = parse_iso_date(request.args.get("date")) or date.today()
    doctor_id = request.args.get("doctor") or None
    context = build_dashboard_context(repository, target_date, doctor_id)
    return render_template_string(dashboard_template, **context)


if __name__ == "__main__":
    app.run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "5000")),
        debug=False,
    )
