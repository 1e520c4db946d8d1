"""Entities stored by MediTrack.

Doctors and patients share a ``PersonDetails`` record. Collection fields are
tuples, so a value handed out by a service cannot be used to change what the
store holds; services replace whole entities through ``KeyedStore.update``.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Optional, Protocol, Tuple

from clinic import settings
from clinic.errors import ValidationError
from clinic.lifecycle import AppointmentStatus

__all__ = [
    "APPOINTMENT_TYPES",
    "PATIENT_TYPES",
    "WEEKDAYS",
    "Appointment",
    "Bill",
    "Doctor",
    "Patient",
    "PersonDetails",
    "Searchable",
    "Specialization",
    "Validatable",
    "quantize_amount",
]

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PATIENT_TYPES = ("INPATIENT", "OUTPATIENT", "EMERGENCY")
APPOINTMENT_TYPES = ("CONSULTATION", "FOLLOW_UP", "CHECKUP", "SURGERY", "EMERGENCY")
WEEKDAYS = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY")
_TYPE_PRIORITY = {"SURGERY": 2, "FOLLOW_UP": 3, "CONSULTATION": 4, "CHECKUP": 5}
SENIOR_AGE = 60
MAX_EXPERIENCE_YEARS = 60


def quantize_amount(value: object) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class Searchable(Protocol):
    def search_terms(self) -> List[str]:
        """Strings matched by free-text search."""


class Validatable(Protocol):
    def validation_errors(self) -> List[str]:
        """Human readable problems; empty when the entity is valid."""


class Specialization(Enum):
    CARDIOLOGY = ("Cardiology", "Heart and cardiovascular system", Decimal("2000"))
    NEUROLOGY = ("Neurology", "Brain and nervous system", Decimal("2500"))
    ORTHOPEDICS = ("Orthopedics", "Bones, joints and muscles", Decimal("1800"))
    DERMATOLOGY = ("Dermatology", "Skin, hair and nails", Decimal("1200"))
    PEDIATRICS = ("Pediatrics", "Medical care of children", Decimal("1500"))
    GENERAL_MEDICINE = ("General Medicine", "Primary and general care", Decimal("1000"))

    def __init__(self, display_name: str, description: str, base_fee: Decimal) -> None:
        self.display_name = display_name
        self.description = description
        self.base_fee = base_fee

    def consultation_fee(self, years_of_experience: int) -> Decimal:
        """Base fee plus 5% per year of experience, never more than three times the base."""

        multiplier = min(Decimal("1") + Decimal("0.05") * max(years_of_experience, 0), Decimal("3"))
        return quantize_amount(self.base_fee * multiplier)

    @classmethod
    def from_name(cls, name: str) -> "Specialization":
        if name is None or not str(name).strip():
            raise ValidationError("Specialization cannot be empty", field="specialization")
        wanted = str(name).strip()
        for specialization in cls:
            if (
                specialization.name == wanted.upper().replace(" ", "_")
                or specialization.display_name.lower() == wanted.lower()
            ):
                return specialization
        raise ValidationError(f"Unknown specialization: {name}", field="specialization")

    def __str__(self) -> str:
        return self.display_name


@dataclass
class PersonDetails:
    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    gender: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    blood_group: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def age(self, today: Optional[date] = None) -> Optional[int]:
        if self.date_of_birth is None:
            return None
        today = today or date.today()
        years = today.year - self.date_of_birth.year
        if (today.month, today.day) < (self.date_of_birth.month, self.date_of_birth.day):
            years -= 1
        return years

    def is_senior(self, today: Optional[date] = None) -> bool:
        age = self.age(today)
        return age is not None and age >= SENIOR_AGE

    def search_terms(self) -> List[str]:
        return [self.first_name, self.last_name, self.full_name, self.email, self.phone]

    def validation_errors(self, today: Optional[date] = None) -> List[str]:
        errors: List[str] = []
        for label, value in (("First name", self.first_name), ("Last name", self.last_name)):
            if not value or not value.strip():
                errors.append(f"{label} is required")
            elif not 2 <= len(value.strip()) <= 50:
                errors.append(f"{label} must be between 2 and 50 characters")

        today = today or date.today()
        if self.date_of_birth is not None:
            if self.date_of_birth > today:
                errors.append("Date of birth cannot be in the future")
            elif not 0 <= (self.age(today) or 0) <= 150:
                errors.append("Age must be between 0 and 150")

        if self.email and not EMAIL_PATTERN.match(self.email):
            errors.append(f"Invalid email format: {self.email}")
        if self.phone:
            digits = re.sub(r"\D", "", self.phone)
            if not 10 <= len(digits) <= 15:
                errors.append(f"Invalid phone number: {self.phone}")
        return errors


@dataclass
class Doctor:
    id: str
    person: PersonDetails
    license_number: str
    specialization: Specialization = Specialization.GENERAL_MEDICINE
    years_of_experience: int = 0
    consultation_fee: Optional[Decimal] = None
    qualification: str = ""
    department: str = ""
    chamber: str = ""
    available: bool = True
    active: bool = True
    rating: float = 0.0
    working_days: Tuple[str, ...] = WEEKDAYS
    patients_treated: int = 0

    def __post_init__(self) -> None:
        if self.consultation_fee is None:
            self.consultation_fee = self.specialization.consultation_fee(self.years_of_experience)
        self.working_days = tuple(day.upper() for day in self.working_days)
        self.rating = min(max(float(self.rating), 0.0), 5.0)

    @property
    def full_name(self) -> str:
        return f"Dr. {self.person.full_name}"

    def effective_fee(self, emergency: bool = False) -> Decimal:
        fee = Decimal(self.consultation_fee or 0)
        if emergency:
            fee *= settings.EMERGENCY_SURCHARGE
        if self.rating >= 4.5:
            fee *= Decimal("1.2")
        elif self.rating >= 4.0:
            fee *= Decimal("1.1")
        return quantize_amount(fee)

    def works_on(self, day: date) -> bool:
        return day.strftime("%A").upper() in self.working_days

    def copy(self) -> "Doctor":
        return copy.deepcopy(self)

    def search_terms(self) -> List[str]:
        return [
            self.id,
            self.license_number,
            self.specialization.display_name,
            self.department,
            self.qualification,
            *self.person.search_terms(),
        ]

    def validation_errors(self, today: Optional[date] = None) -> List[str]:
        errors = self.person.validation_errors(today)
        if not self.license_number or not self.license_number.strip():
            errors.append("License number is required")
        if not 0 <= self.years_of_experience <= MAX_EXPERIENCE_YEARS:
            errors.append(f"Years of experience must be between 0 and {MAX_EXPERIENCE_YEARS}")
        if self.consultation_fee is not None and self.consultation_fee < 0:
            errors.append("Consultation fee cannot be negative")
        return errors


@dataclass
class Patient:
    id: str
    person: PersonDetails
    patient_type: str = "OUTPATIENT"
    medical_history: Tuple[str, ...] = ()
    allergies: Tuple[str, ...] = ()
    current_medications: Tuple[str, ...] = ()
    insurance_provider: str = ""
    emergency_contact: str = ""
    registration_date: Optional[date] = None
    visit_count: int = 0
    active: bool = True

    def __post_init__(self) -> None:
        self.patient_type = (self.patient_type or "OUTPATIENT").upper()
        self.medical_history = tuple(self.medical_history)
        self.allergies = tuple(self.allergies)
        self.current_medications = tuple(self.current_medications)

    @property
    def has_insurance(self) -> bool:
        return bool(self.insurance_provider and self.insurance_provider.strip())

    def is_allergic_to(self, substance: str) -> bool:
        wanted = substance.strip().lower()
        return any(allergy.lower() == wanted for allergy in self.allergies)

    def copy(self) -> "Patient":
        return copy.deepcopy(self)

    def search_terms(self) -> List[str]:
        return [self.id, self.patient_type, self.insurance_provider, *self.person.search_terms()]

    def validation_errors(self, today: Optional[date] = None) -> List[str]:
        errors = self.person.validation_errors(today)
        if self.patient_type not in PATIENT_TYPES:
            errors.append(f"Invalid patient type: {self.patient_type}")
        if self.visit_count < 0:
            errors.append("Visit count cannot be negative")
        return errors


@dataclass
class Appointment:
    id: str
    patient_id: str
    doctor_id: str
    start: datetime
    duration_minutes: int = settings.DEFAULT_APPOINTMENT_DURATION
    status: AppointmentStatus = AppointmentStatus.PENDING
    reason: str = ""
    appointment_type: str = "CONSULTATION"
    emergency: bool = False
    consultation_fee: Decimal = Decimal("0.00")
    notes: str = ""
    symptoms: str = ""
    diagnosis: str = ""
    prescription: str = ""
    cancellation_reason: str = ""
    reschedule_count: int = 0
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    reminder_sent: Optional[datetime] = None
    active: bool = True

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def priority(self) -> int:
        """1 is the most urgent."""

        if self.emergency or self.appointment_type == "EMERGENCY":
            return 1
        return _TYPE_PRIORITY.get(self.appointment_type, 4)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return not self.status.is_final and self.end < now

    def needs_reminder(self, now: datetime, lead_hours: int = settings.REMINDER_LEAD_HOURS) -> bool:
        """True once ``now`` is inside the reminder window and no reminder went out yet."""

        if self.start is None or self.reminder_sent is not None or self.status.is_final:
            return False
        return now > self.start - timedelta(hours=lead_hours)

    def mark_reminder_sent(self, now: datetime) -> None:
        self.reminder_sent = now

    def append_note(self, text: str) -> None:
        self.notes = f"{self.notes}\n{text}" if self.notes else text

    def copy(self) -> "Appointment":
        return copy.deepcopy(self)

    def search_terms(self) -> List[str]:
        return [
            self.id,
            self.patient_id,
            self.doctor_id,
            self.reason,
            self.appointment_type,
            self.status.display_name,
            self.diagnosis,
            self.symptoms,
        ]

    def validation_errors(self) -> List[str]:
        errors: List[str] = []
        if not self.patient_id:
            errors.append("Patient ID is required")
        if not self.doctor_id:
            errors.append("Doctor ID is required")
        if self.start is None:
            errors.append("Appointment time is required")
        if not 0 < self.duration_minutes <= settings.MAX_APPOINTMENT_DURATION:
            errors.append(
                f"Duration must be between 1 and {settings.MAX_APPOINTMENT_DURATION} minutes"
            )
        if self.appointment_type not in APPOINTMENT_TYPES:
            errors.append(f"Invalid appointment type: {self.appointment_type}")
        if self.reschedule_count < 0:
            errors.append("Reschedule count cannot be negative")
        if self.status is AppointmentStatus.CANCELLED and not self.cancellation_reason:
            errors.append("Cancelled appointments must carry a cancellation reason")
        if (
            self.actual_start is not None
            and self.actual_end is not None
            and self.actual_end < self.actual_start
        ):
            errors.append("Actual end time cannot precede actual start time")
        return errors


@dataclass
class Bill:
    id: str
    appointment_id: str
    patient_id: str
    doctor_id: str
    base_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    created_at: datetime = field(default_factory=datetime.now)
    paid: bool = False
    paid_at: Optional[datetime] = None
    payment_method: str = ""

    def copy(self) -> "Bill":
        return copy.deepcopy(self)

    def search_terms(self) -> List[str]:
        return [self.id, self.appointment_id, self.patient_id, self.doctor_id, self.payment_method]

    def validation_errors(self) -> List[str]:
        errors: List[str] = []
        if not self.appointment_id:
            errors.append("Appointment ID is required")
        if self.total_amount < 0:
            errors.append("Total amount cannot be negative")
        if self.paid and self.paid_at is None:
            errors.append("Paid bills must carry a payment time")
        return errors
