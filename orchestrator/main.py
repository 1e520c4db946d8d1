"""Command line entry point for MediTrack."""
from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

if __package__ is None or __package__ == "":  # pragma: no cover - runtime safety for script execution
    sys.path.append(str(Path(__file__).resolve().parent.parent))

from clinic import settings
from clinic.errors import ClinicError
from clinic.models import APPOINTMENT_TYPES, PATIENT_TYPES, Appointment, Bill, PersonDetails, Specialization
from datastore.csv_files import create_backup, load_snapshot, save_snapshot
from services import ClinicServices, create_statistics_report, scheduling_insights

logger = logging.getLogger(__name__)

TRANSITIONS = ("confirm", "start", "complete", "cancel", "no-show")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")


class TaskLogger:
    """Persists command runs into a JSON log."""

    def __init__(self, log_path: Path) -> None:
        self._log_path = log_path
        self._lock = threading.Lock()
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        task_name: str,
        status: str,
        *,
        start_time: Optional[datetime] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, object]] = None,
    ) -> None:
        completed_at = _utc_now()
        started_at = start_time or completed_at
        entry: Dict[str, object] = {
            "task": task_name,
            "status": status,
            "started_at": _format_timestamp(started_at),
            "completed_at": _format_timestamp(completed_at),
        }
        if message:
            entry["message"] = message
        if details is not None:
            entry["details"] = details

        with self._lock:
            history = self.read_history()
            history.append(entry)
            serialized = json.dumps(history, indent=2, default=str)
            self._log_path.write_text(f"{serialized}\n", encoding="utf-8")

    def read_history(self) -> List[Dict[str, object]]:
        if not self._log_path.exists():
            return []
        raw_content = self._log_path.read_text(encoding="utf-8").strip()
        if not raw_content:
            return []
        try:
            data = json.loads(raw_content)
        except json.JSONDecodeError as exc:
            raise ValueError(
                f"Task log is corrupted and cannot be parsed: {exc.msg}"
            ) from exc
        if not isinstance(data, list):
            raise ValueError("Task log must contain a JSON list of entries.")
        return data


def execute_with_logging(
    task_name: str, action: Callable[[], Optional[Dict[str, object]]], task_logger: TaskLogger
) -> Optional[Dict[str, object]]:
    """Run ``action`` while emitting structured log entries."""

    start_time = _utc_now()
    details: Optional[Dict[str, object]] = None
    status = "success"
    message: Optional[str] = None

    try:
        result = action()
        if isinstance(result, dict):
            details = result
        return result
    except Exception as exc:
        status = "failed"
        message = str(exc)
        raise
    finally:
        task_logger.log(
            task_name,
            status,
            start_time=start_time,
            message=message,
            details=details,
        )


def appointment_payload(appointment: Appointment) -> Dict[str, object]:
    return {
        "id": appointment.id,
        "patient_id": appointment.patient_id,
        "doctor_id": appointment.doctor_id,
        "start": appointment.start.isoformat(),
        "end": appointment.end.isoformat(),
        "duration_minutes": appointment.duration_minutes,
        "status": appointment.status.name,
        "type": appointment.appointment_type,
        "emergency": appointment.emergency,
        "reason": appointment.reason,
        "fee": f"{appointment.consultation_fee:.2f}",
        "reschedule_count": appointment.reschedule_count,
        "reminder_sent": appointment.reminder_sent.isoformat() if appointment.reminder_sent else None,
        "active": appointment.active,
    }


def bill_payload(bill: Bill) -> Dict[str, object]:
    return {
        "id": bill.id,
        "appointment_id": bill.appointment_id,
        "base_amount": f"{bill.base_amount:.2f}",
        "discount_amount": f"{bill.discount_amount:.2f}",
        "tax_amount": f"{bill.tax_amount:.2f}",
        "total_amount": f"{bill.total_amount:.2f}",
        "paid": bill.paid,
        "payment_method": bill.payment_method,
    }


def _parse_datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date/time '{value}', expected ISO format") from exc


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD") from exc


def load_services(data_dir: Path) -> ClinicServices:
    services = ClinicServices()
    services.restore_from_snapshot(load_snapshot(data_dir))
    return services


# Commands return a JSON-serializable summary; COMMANDS marks the ones that
# change the stores and need the snapshot written back.


def cmd_summary(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    payload: Dict[str, object] = dict(services.summary())
    payload["statistics"] = services.appointments.statistics().as_dict()
    return payload


def cmd_register_patient(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    person = PersonDetails(
        first_name=args.first_name,
        last_name=args.last_name,
        date_of_birth=args.date_of_birth,
        gender=args.gender or "",
        email=args.email or "",
        phone=args.phone or "",
    )
    patient = services.patients.create_patient(
        person, args.patient_type, insurance_provider=args.insurance or ""
    )
    return {"id": patient.id, "name": patient.person.full_name}


def cmd_register_doctor(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    person = PersonDetails(
        first_name=args.first_name,
        last_name=args.last_name,
        email=args.email or "",
        phone=args.phone or "",
    )
    doctor = services.doctors.create_doctor(
        person, args.license, args.specialization, args.experience
    )
    return {"id": doctor.id, "name": doctor.full_name, "fee": f"{doctor.consultation_fee:.2f}"}


def cmd_book(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    appointment = services.appointments.create_appointment(
        args.patient,
        args.doctor,
        args.start,
        args.duration,
        args.reason,
        args.type,
        args.emergency,
    )
    return appointment_payload(appointment)


def cmd_reschedule(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    appointment = services.appointments.reschedule_appointment(args.appointment, args.start, args.reason)
    return appointment_payload(appointment)


def cmd_transition(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    appointments = services.appointments
    if args.action == "confirm":
        appointment = appointments.confirm_appointment(args.appointment)
    elif args.action == "start":
        appointment = appointments.start_appointment(args.appointment)
    elif args.action == "complete":
        appointment = appointments.complete_appointment(
            args.appointment, args.diagnosis, args.prescription, args.notes
        )
    elif args.action == "cancel":
        appointment = appointments.cancel_appointment(args.appointment, args.reason)
    else:
        appointment = appointments.mark_no_show(args.appointment)
    return appointment_payload(appointment)


def cmd_list(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    if args.doctor or args.status or args.date:
        matches = services.appointments.advanced_search(
            doctor_id=args.doctor,
            status=args.status,
            start_date=args.date,
            end_date=args.date,
        )
        start = args.page * args.size
        content = matches[start : start + args.size]
        total = len(matches)
    else:
        page = services.appointments.page(args.page, args.size)
        content = list(page.content)
        total = page.total_elements
    return {
        "page": args.page,
        "size": args.size,
        "total_elements": total,
        "total_pages": (total + args.size - 1) // args.size,
        "appointments": [appointment_payload(appointment) for appointment in content],
    }


def cmd_bill(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    return bill_payload(services.billing.generate_bill(args.appointment))


def cmd_pay(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    return bill_payload(services.billing.record_payment(args.bill, args.amount, args.method))


def cmd_backup(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    backups = create_backup(args.data_dir)
    return {"files": [str(path) for path in backups]}


def cmd_report(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    stats = services.appointments.statistics()
    report_path = create_statistics_report(stats, args.output)
    return {"report": str(report_path), "total": stats.total}


def cmd_remind(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    reminded = services.appointments.send_reminders()
    return {"reminded": [appointment.id for appointment in reminded]}


def cmd_insights(services: ClinicServices, args: argparse.Namespace) -> Dict[str, object]:
    result = scheduling_insights(services.appointments.store.values()).as_dict()
    if args.symptom:
        result["recommended_doctors"] = [
            {"id": doctor.id, "name": doctor.full_name, "specialization": doctor.specialization.name}
            for doctor in services.doctors.recommend_for_symptoms(args.symptom)
        ]
    return result


COMMANDS: Dict[str, tuple] = {
    "summary": (cmd_summary, False),
    "register-patient": (cmd_register_patient, True),
    "register-doctor": (cmd_register_doctor, True),
    "book": (cmd_book, True),
    "reschedule": (cmd_reschedule, True),
    "transition": (cmd_transition, True),
    "list": (cmd_list, False),
    "bill": (cmd_bill, True),
    "pay": (cmd_pay, True),
    "backup": (cmd_backup, False),
    "report": (cmd_report, False),
    "remind": (cmd_remind, True),
    "insights": (cmd_insights, False),
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=f"{settings.APPLICATION_NAME} clinic management")
    parser.add_argument(
        "--version", action="version", version=f"{settings.APPLICATION_NAME} {settings.VERSION}"
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Directory holding the CSV data files (default: MEDITRACK_DATA_DIR or ./data)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("summary", help="Show store sizes and appointment statistics")

    patient = subparsers.add_parser("register-patient", help="Register a new patient")
    patient.add_argument("--first-name", required=True)
    patient.add_argument("--last-name", required=True)
    patient.add_argument("--date-of-birth", type=_parse_date)
    patient.add_argument("--gender")
    patient.add_argument("--email")
    patient.add_argument("--phone")
    patient.add_argument("--patient-type", choices=PATIENT_TYPES, default="OUTPATIENT")
    patient.add_argument("--insurance", help="Insurance provider name")

    doctor = subparsers.add_parser("register-doctor", help="Register a new doctor")
    doctor.add_argument("--first-name", required=True)
    doctor.add_argument("--last-name", required=True)
    doctor.add_argument("--license", required=True)
    doctor.add_argument(
        "--specialization",
        choices=[specialization.name for specialization in Specialization],
        default=Specialization.GENERAL_MEDICINE.name,
    )
    doctor.add_argument("--experience", type=int, default=0)
    doctor.add_argument("--email")
    doctor.add_argument("--phone")

    book = subparsers.add_parser("book", help="Book an appointment")
    book.add_argument("--patient", required=True)
    book.add_argument("--doctor", required=True)
    book.add_argument("--start", required=True, type=_parse_datetime)
    book.add_argument("--duration", type=int, default=settings.DEFAULT_APPOINTMENT_DURATION)
    book.add_argument("--reason", required=True)
    book.add_argument("--type", choices=APPOINTMENT_TYPES, default="CONSULTATION")
    book.add_argument("--emergency", action="store_true")

    reschedule = subparsers.add_parser("reschedule", help="Move an appointment")
    reschedule.add_argument("appointment")
    reschedule.add_argument("--start", required=True, type=_parse_datetime)
    reschedule.add_argument("--reason")

    transition = subparsers.add_parser("transition", help="Change an appointment's status")
    transition.add_argument("appointment")
    transition.add_argument("action", choices=TRANSITIONS)
    transition.add_argument("--diagnosis")
    transition.add_argument("--prescription")
    transition.add_argument("--notes")
    transition.add_argument("--reason")

    listing = subparsers.add_parser("list", help="List appointments page by page")
    listing.add_argument("--page", type=int, default=0)
    listing.add_argument("--size", type=int, default=20)
    listing.add_argument("--doctor")
    listing.add_argument("--status")
    listing.add_argument("--date", type=_parse_date)

    bill = subparsers.add_parser("bill", help="Generate the bill of a completed appointment")
    bill.add_argument("appointment")

    pay = subparsers.add_parser("pay", help="Record the payment of a bill")
    pay.add_argument("bill")
    pay.add_argument("--amount", required=True)
    pay.add_argument("--method", default="CASH")

    subparsers.add_parser("backup", help="Copy the data files into the backup directory")

    report = subparsers.add_parser("report", help="Write the statistics PDF")
    report.add_argument("--output", type=Path, default=None)

    subparsers.add_parser("remind", help="Send reminders for appointments starting within a day")

    insights = subparsers.add_parser("insights", help="Show booking patterns and doctor suggestions")
    insights.add_argument("--symptom", action="append", default=[], help="Symptom to match; repeatable")

    args = parser.parse_args(argv)
    if args.command == "list" and (args.page < 0 or args.size <= 0):
        parser.error("--page must be >= 0 and --size must be > 0")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    args = parse_args(argv)
    if args.data_dir is None:
        args.data_dir = settings.data_dir()
    task_logger = TaskLogger(settings.task_log_path(args.data_dir))
    command, mutates = COMMANDS[args.command]

    def action() -> Dict[str, object]:
        services = load_services(args.data_dir)
        result = command(services, args)
        if mutates:
            save_snapshot(services.create_snapshot(), args.data_dir)
        return result

    try:
        result = execute_with_logging(args.command, action, task_logger)
    except ClinicError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
