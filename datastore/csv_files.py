"""CSV persistence for whole-clinic snapshots.

The services never touch files. The command line tools take a
``ClinicSnapshot`` from the services, write it here, and on start-up read the
files back into a snapshot that the services restore from. Rows that cannot
be parsed are logged and skipped; a missing file simply means an empty
collection.
"""
from __future__ import annotations

import csv
import logging
import shutil
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from clinic.errors import ClinicError
from clinic.lifecycle import AppointmentStatus
from clinic.models import WEEKDAYS, Appointment, Bill, Doctor, Patient, PersonDetails, Specialization

from .keyed_store import Snapshot

__all__ = [
    "ClinicSnapshot",
    "DATA_FILES",
    "create_backup",
    "load_snapshot",
    "save_snapshot",
]

logger = logging.getLogger(__name__)

LIST_SEPARATOR = ";"
BACKUP_DIRECTORY = "backup"

PERSON_COLUMNS = [
    "ID",
    "FirstName",
    "LastName",
    "DateOfBirth",
    "Gender",
    "Email",
    "Phone",
    "Address",
    "BloodGroup",
]
DOCTOR_COLUMNS = PERSON_COLUMNS + [
    "LicenseNumber",
    "Specialization",
    "YearsOfExperience",
    "ConsultationFee",
    "Qualification",
    "Department",
    "IsAvailable",
    "IsActive",
    "WorkingDays",
    "Chamber",
    "Rating",
    "TotalPatientsTreated",
]
PATIENT_COLUMNS = PERSON_COLUMNS + [
    "PatientType",
    "InsuranceProvider",
    "HasInsurance",
    "EmergencyContact",
    "RegistrationDate",
    "VisitCount",
    "IsActive",
    "MedicalHistory",
    "Allergies",
    "CurrentMedications",
]
APPOINTMENT_COLUMNS = [
    "ID",
    "PatientID",
    "DoctorID",
    "DateTime",
    "Duration",
    "Status",
    "ReasonForVisit",
    "Notes",
    "Symptoms",
    "Diagnosis",
    "Prescription",
    "ConsultationFee",
    "IsEmergency",
    "AppointmentType",
    "RescheduleCount",
    "CancellationReason",
    "ActualStart",
    "ActualEnd",
    "ReminderSent",
    "IsActive",
]
BILL_COLUMNS = [
    "ID",
    "AppointmentID",
    "PatientID",
    "DoctorID",
    "BaseAmount",
    "DiscountAmount",
    "TaxAmount",
    "TotalAmount",
    "IsPaid",
    "PaymentDate",
    "PaymentMethod",
    "CreatedAt",
]


@dataclass(frozen=True)
class ClinicSnapshot:
    """Point-in-time copy of every store, the unit exchanged with the CSV files."""

    doctors: Snapshot[Doctor]
    patients: Snapshot[Patient]
    appointments: Snapshot[Appointment]
    bills: Snapshot[Bill]
    taken_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_entities(
        cls,
        doctors: Iterable[Doctor] = (),
        patients: Iterable[Patient] = (),
        appointments: Iterable[Appointment] = (),
        bills: Iterable[Bill] = (),
        taken_at: Optional[datetime] = None,
    ) -> "ClinicSnapshot":
        taken_at = taken_at or datetime.now()
        return cls(
            doctors=Snapshot("Doctor", {doctor.id: doctor for doctor in doctors}, taken_at),
            patients=Snapshot("Patient", {patient.id: patient for patient in patients}, taken_at),
            appointments=Snapshot(
                "Appointment", {appointment.id: appointment for appointment in appointments}, taken_at
            ),
            bills=Snapshot("Bill", {bill.id: bill for bill in bills}, taken_at),
            taken_at=taken_at,
        )

    def identifiers(self) -> List[str]:
        return (
            self.doctors.keys()
            + self.patients.keys()
            + self.appointments.keys()
            + self.bills.keys()
        )


# Field formatting


def _text(value: Optional[object]) -> str:
    return "" if value is None else str(value)


def _join(values: Iterable[str]) -> str:
    return LIST_SEPARATOR.join(value.replace(LIST_SEPARATOR, ",") for value in values)


def _split(raw: Optional[str]) -> tuple:
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(LIST_SEPARATOR) if item.strip())


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _parse_flag(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"true", "1", "yes"}


def _parse_int(raw: Optional[str], default: int = 0) -> int:
    if raw is None or not raw.strip():
        return default
    return int(raw.strip())


def _parse_decimal(raw: Optional[str], default: str = "0.00") -> Decimal:
    return Decimal(raw.strip() if raw and raw.strip() else default).quantize(Decimal("0.01"))


def _parse_date(raw: Optional[str]) -> Optional[date]:
    return date.fromisoformat(raw.strip()) if raw and raw.strip() else None


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw.strip()) if raw and raw.strip() else None


def _isoformat(value: Optional[object]) -> str:
    return value.isoformat() if value is not None else ""


# Row conversion


def _person_row(entity_id: str, person: PersonDetails) -> Dict[str, str]:
    return {
        "ID": entity_id,
        "FirstName": person.first_name,
        "LastName": person.last_name,
        "DateOfBirth": _isoformat(person.date_of_birth),
        "Gender": person.gender,
        "Email": person.email,
        "Phone": person.phone,
        "Address": person.address,
        "BloodGroup": person.blood_group,
    }


def _person_from_row(row: Mapping[str, str]) -> PersonDetails:
    return PersonDetails(
        first_name=row["FirstName"].strip(),
        last_name=row["LastName"].strip(),
        date_of_birth=_parse_date(row.get("DateOfBirth")),
        gender=_text(row.get("Gender")),
        email=_text(row.get("Email")),
        phone=_text(row.get("Phone")),
        address=_text(row.get("Address")),
        blood_group=_text(row.get("BloodGroup")),
    )


def _doctor_row(doctor: Doctor) -> Dict[str, str]:
    row = _person_row(doctor.id, doctor.person)
    row.update(
        {
            "LicenseNumber": doctor.license_number,
            "Specialization": doctor.specialization.name,
            "YearsOfExperience": str(doctor.years_of_experience),
            "ConsultationFee": f"{doctor.consultation_fee:.2f}",
            "Qualification": doctor.qualification,
            "Department": doctor.department,
            "IsAvailable": _flag(doctor.available),
            "IsActive": _flag(doctor.active),
            "WorkingDays": _join(doctor.working_days),
            "Chamber": doctor.chamber,
            "Rating": str(doctor.rating),
            "TotalPatientsTreated": str(doctor.patients_treated),
        }
    )
    return row


def _doctor_from_row(row: Mapping[str, str]) -> Doctor:
    fee = row.get("ConsultationFee")
    return Doctor(
        id=row["ID"].strip(),
        person=_person_from_row(row),
        license_number=row["LicenseNumber"].strip(),
        specialization=Specialization.from_name(row["Specialization"]),
        years_of_experience=_parse_int(row.get("YearsOfExperience")),
        consultation_fee=_parse_decimal(fee) if fee and fee.strip() else None,
        qualification=_text(row.get("Qualification")),
        department=_text(row.get("Department")),
        chamber=_text(row.get("Chamber")),
        available=_parse_flag(row.get("IsAvailable"), True),
        active=_parse_flag(row.get("IsActive"), True),
        rating=float(row.get("Rating") or 0.0),
        working_days=_split(row.get("WorkingDays")) or WEEKDAYS,
        patients_treated=_parse_int(row.get("TotalPatientsTreated")),
    )


def _patient_row(patient: Patient) -> Dict[str, str]:
    row = _person_row(patient.id, patient.person)
    row.update(
        {
            "PatientType": patient.patient_type,
            "InsuranceProvider": patient.insurance_provider,
            "HasInsurance": _flag(patient.has_insurance),
            "EmergencyContact": patient.emergency_contact,
            "RegistrationDate": _isoformat(patient.registration_date),
            "VisitCount": str(patient.visit_count),
            "IsActive": _flag(patient.active),
            "MedicalHistory": _join(patient.medical_history),
            "Allergies": _join(patient.allergies),
            "CurrentMedications": _join(patient.current_medications),
        }
    )
    return row


def _patient_from_row(row: Mapping[str, str]) -> Patient:
    return Patient(
        id=row["ID"].strip(),
        person=_person_from_row(row),
        patient_type=_text(row.get("PatientType")) or "OUTPATIENT",
        insurance_provider=_text(row.get("InsuranceProvider")),
        emergency_contact=_text(row.get("EmergencyContact")),
        registration_date=_parse_date(row.get("RegistrationDate")),
        visit_count=_parse_int(row.get("VisitCount")),
        active=_parse_flag(row.get("IsActive"), True),
        medical_history=_split(row.get("MedicalHistory")),
        allergies=_split(row.get("Allergies")),
        current_medications=_split(row.get("CurrentMedications")),
    )


def _appointment_row(appointment: Appointment) -> Dict[str, str]:
    return {
        "ID": appointment.id,
        "PatientID": appointment.patient_id,
        "DoctorID": appointment.doctor_id,
        "DateTime": appointment.start.isoformat(),
        "Duration": str(appointment.duration_minutes),
        "Status": appointment.status.name,
        "ReasonForVisit": appointment.reason,
        "Notes": appointment.notes,
        "Symptoms": appointment.symptoms,
        "Diagnosis": appointment.diagnosis,
        "Prescription": appointment.prescription,
        "ConsultationFee": f"{appointment.consultation_fee:.2f}",
        "IsEmergency": _flag(appointment.emergency),
        "AppointmentType": appointment.appointment_type,
        "RescheduleCount": str(appointment.reschedule_count),
        "CancellationReason": appointment.cancellation_reason,
        "ActualStart": _isoformat(appointment.actual_start),
        "ActualEnd": _isoformat(appointment.actual_end),
        "ReminderSent": _isoformat(appointment.reminder_sent),
        "IsActive": _flag(appointment.active),
    }


def _appointment_from_row(row: Mapping[str, str]) -> Appointment:
    start = _parse_datetime(row.get("DateTime"))
    if start is None:
        raise ValueError("DateTime is required")
    return Appointment(
        id=row["ID"].strip(),
        patient_id=row["PatientID"].strip(),
        doctor_id=row["DoctorID"].strip(),
        start=start,
        duration_minutes=_parse_int(row.get("Duration"), 30),
        status=AppointmentStatus.from_name(row.get("Status") or "PENDING"),
        reason=_text(row.get("ReasonForVisit")),
        notes=_text(row.get("Notes")),
        symptoms=_text(row.get("Symptoms")),
        diagnosis=_text(row.get("Diagnosis")),
        prescription=_text(row.get("Prescription")),
        consultation_fee=_parse_decimal(row.get("ConsultationFee")),
        emergency=_parse_flag(row.get("IsEmergency"), False),
        appointment_type=(_text(row.get("AppointmentType")) or "CONSULTATION").upper(),
        reschedule_count=_parse_int(row.get("RescheduleCount")),
        cancellation_reason=_text(row.get("CancellationReason")),
        actual_start=_parse_datetime(row.get("ActualStart")),
        actual_end=_parse_datetime(row.get("ActualEnd")),
        reminder_sent=_parse_datetime(row.get("ReminderSent")),
        active=_parse_flag(row.get("IsActive"), True),
    )


def _bill_row(bill: Bill) -> Dict[str, str]:
    return {
        "ID": bill.id,
        "AppointmentID": bill.appointment_id,
        "PatientID": bill.patient_id,
        "DoctorID": bill.doctor_id,
        "BaseAmount": f"{bill.base_amount:.2f}",
        "DiscountAmount": f"{bill.discount_amount:.2f}",
        "TaxAmount": f"{bill.tax_amount:.2f}",
        "TotalAmount": f"{bill.total_amount:.2f}",
        "IsPaid": _flag(bill.paid),
        "PaymentDate": _isoformat(bill.paid_at),
        "PaymentMethod": bill.payment_method,
        "CreatedAt": bill.created_at.isoformat(),
    }


def _bill_from_row(row: Mapping[str, str]) -> Bill:
    return Bill(
        id=row["ID"].strip(),
        appointment_id=row["AppointmentID"].strip(),
        patient_id=_text(row.get("PatientID")),
        doctor_id=_text(row.get("DoctorID")),
        base_amount=_parse_decimal(row.get("BaseAmount")),
        discount_amount=_parse_decimal(row.get("DiscountAmount")),
        tax_amount=_parse_decimal(row.get("TaxAmount")),
        total_amount=_parse_decimal(row.get("TotalAmount")),
        created_at=_parse_datetime(row.get("CreatedAt")) or datetime.now(),
        paid=_parse_flag(row.get("IsPaid"), False),
        paid_at=_parse_datetime(row.get("PaymentDate")),
        payment_method=_text(row.get("PaymentMethod")),
    )


DATA_FILES = {
    "doctors": ("doctors.csv", DOCTOR_COLUMNS),
    "patients": ("patients.csv", PATIENT_COLUMNS),
    "appointments": ("appointments.csv", APPOINTMENT_COLUMNS),
    "bills": ("bills.csv", BILL_COLUMNS),
}


def _write_csv(path: Path, columns: List[str], rows: Iterable[Dict[str, str]]) -> int:
    written = 0
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=columns)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
            written += 1
    return written


def _read_csv(path: Path, parse: Callable[[Mapping[str, str]], object]) -> List:
    if not path.exists():
        logger.info("No data file at %s; starting empty", path)
        return []

    entities = []
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        for line_number, row in enumerate(reader, start=2):
            try:
                entities.append(parse(row))
            except (AttributeError, KeyError, ValueError, TypeError, InvalidOperation, ClinicError) as exc:
                logger.warning("Skipping invalid row %d in %s: %s", line_number, path.name, exc)
    logger.info("Loaded %d records from %s", len(entities), path)
    return entities


def save_snapshot(snapshot: ClinicSnapshot, data_dir: Path | str) -> Dict[str, Path]:
    """Write every collection of ``snapshot`` to its CSV file and return the paths."""

    directory = Path(data_dir)
    directory.mkdir(parents=True, exist_ok=True)
    converters = {
        "doctors": (snapshot.doctors, _doctor_row),
        "patients": (snapshot.patients, _patient_row),
        "appointments": (snapshot.appointments, _appointment_row),
        "bills": (snapshot.bills, _bill_row),
    }
    paths: Dict[str, Path] = {}
    for name, (filename, columns) in DATA_FILES.items():
        collection, to_row = converters[name]
        path = directory / filename
        count = _write_csv(path, columns, (to_row(value) for value in collection.values()))
        logger.info("Saved %d %s to %s", count, name, path)
        paths[name] = path
    return paths


def load_snapshot(data_dir: Path | str, taken_at: Optional[datetime] = None) -> ClinicSnapshot:
    directory = Path(data_dir)
    return ClinicSnapshot.from_entities(
        doctors=_read_csv(directory / DATA_FILES["doctors"][0], _doctor_from_row),
        patients=_read_csv(directory / DATA_FILES["patients"][0], _patient_from_row),
        appointments=_read_csv(directory / DATA_FILES["appointments"][0], _appointment_from_row),
        bills=_read_csv(directory / DATA_FILES["bills"][0], _bill_from_row),
        taken_at=taken_at,
    )


def create_backup(data_dir: Path | str, now: Optional[datetime] = None) -> List[Path]:
    """Copy existing data files into ``backup/`` with a timestamp suffix."""

    directory = Path(data_dir)
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    backup_dir = directory / BACKUP_DIRECTORY
    backups: List[Path] = []
    for filename, _columns in DATA_FILES.values():
        source = directory / filename
        if not source.exists():
            continue
        backup_dir.mkdir(parents=True, exist_ok=True)
        target = backup_dir / f"{source.stem}_{stamp}{source.suffix}"
        shutil.copy2(source, target)
        backups.append(target)
    logger.info("Backed up %d data files to %s", len(backups), backup_dir)
    return backups
