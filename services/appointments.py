"""Appointment booking and status use cases."""
from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Union

from clinic import settings
from clinic.errors import ClinicError, NotFoundError, ValidationError
from clinic.ids import IdAllocator
from clinic.lifecycle import AppointmentLifecycle, AppointmentStatus
from clinic.models import APPOINTMENT_TYPES, Appointment
from clinic.scheduling import ConflictChecker
from datastore import KeyedStore, Page

from .common import copies, copy_page, ensure_valid, require_text, sorted_copies, validate_identifier
from .doctors import DoctorService
from .notifications import Notifier, send_notification
from .patients import PatientService
from .reports import AppointmentStatistics, appointment_statistics

__all__ = ["AppointmentService"]

logger = logging.getLogger(__name__)


def _by_start(appointment: Appointment):
    return (appointment.start, appointment.id)


def _coerce_status(status: Union[AppointmentStatus, str]) -> AppointmentStatus:
    if isinstance(status, AppointmentStatus):
        return status
    return AppointmentStatus.from_name(status)


class AppointmentService:
    """Books appointments and moves them through their lifecycle.

    Store values are never mutated in place: each use case fetches a copy,
    lets ``AppointmentLifecycle`` change it and commits it with
    ``KeyedStore.update``. Booking, editing and rescheduling hold ``_booking_lock``
    from the conflict check until the commit so two overlapping requests
    cannot both pass the check.
    """

    def __init__(
        self,
        ids: IdAllocator,
        patients: PatientService,
        doctors: DoctorService,
        *,
        store: Optional[KeyedStore[Appointment]] = None,
        clock: Callable[[], datetime] = datetime.now,
        clinic_start_hour: int = settings.DEFAULT_CLINIC_START_HOUR,
        clinic_end_hour: int = settings.DEFAULT_CLINIC_END_HOUR,
        notifier: Notifier = send_notification,
    ) -> None:
        self.store: KeyedStore[Appointment] = store or KeyedStore(
            "Appointment", default_sort_key=_by_start, clock=clock
        )
        self._ids = ids
        self._patients = patients
        self._doctors = doctors
        self._clock = clock
        self._clinic_start_hour = clinic_start_hour
        self._clinic_end_hour = clinic_end_hour
        self._notifier = notifier
        self.conflicts = ConflictChecker(
            self._doctor_book,
            clinic_start_hour=clinic_start_hour,
            clinic_end_hour=clinic_end_hour,
            clock=clock,
        )
        self.lifecycle = AppointmentLifecycle(self.conflicts, clock)
        self._booking_lock = threading.RLock()

    # Booking

    def create_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        start: datetime,
        duration_minutes: int = settings.DEFAULT_APPOINTMENT_DURATION,
        reason: str = "",
        appointment_type: str = "CONSULTATION",
        emergency: bool = False,
    ) -> Appointment:
        patient_id = validate_identifier(patient_id, "patient_id")
        doctor_id = validate_identifier(doctor_id, "doctor_id")
        reason = require_text(reason, "reason")
        appointment_type = (appointment_type or "CONSULTATION").strip().upper()
        if appointment_type not in APPOINTMENT_TYPES:
            raise ValidationError(f"Invalid appointment type: {appointment_type}", field="appointment_type")
        emergency = bool(emergency) or appointment_type == "EMERGENCY"
        self._validate_duration(duration_minutes)
        self._validate_start(start)

        patient = self._patients.require(patient_id)
        if not patient.active:
            raise ValidationError(f"Patient {patient_id} is inactive", field="patient_id")
        doctor = self._doctors.require(doctor_id)
        if not doctor.active:
            raise ValidationError(f"Doctor {doctor_id} is inactive", field="doctor_id")
        if not doctor.available:
            raise ValidationError(f"Doctor {doctor_id} is not available", field="doctor_id")

        with self._booking_lock:
            self.conflicts.ensure_available(doctor_id, start, duration_minutes)
            appointment = Appointment(
                id=self._ids.next_id("appointment"),
                patient_id=patient_id,
                doctor_id=doctor_id,
                start=start,
                duration_minutes=duration_minutes,
                reason=reason,
                appointment_type=appointment_type,
                emergency=emergency,
                consultation_fee=doctor.effective_fee(emergency),
            )
            self.store.put(appointment.id, appointment.copy())

        logger.info(
            "Booked appointment %s for patient %s with doctor %s at %s",
            appointment.id,
            patient_id,
            doctor_id,
            start.isoformat(),
        )

        try:
            self._patients.record_visit(patient_id)
        except ClinicError as exc:
            logger.warning(
                "Appointment %s created but visit count for patient %s was not updated: %s",
                appointment.id,
                patient_id,
                exc,
            )
        return appointment

    def reschedule_appointment(
        self, appointment_id: str, new_start: datetime, reason: Optional[str] = None
    ) -> Appointment:
        if new_start is None:
            raise ValidationError("New appointment time is required", field="start")
        self._validate_start(new_start)
        with self._booking_lock:
            appointment = self.require(appointment_id)
            self.lifecycle.reschedule(appointment, new_start, reason)
            self._commit(appointment)
        return appointment

    def update_appointment(self, appointment: Appointment) -> Appointment:
        """Replace the details of a pending or confirmed appointment.

        Status, reschedule count and reminder time are kept from the stored
        record; they only change through the lifecycle methods. A new time,
        length or doctor must pass the conflict check.
        """

        if appointment is None:
            raise ValidationError("Appointment cannot be None", field="appointment")
        appointment_id = validate_identifier(appointment.id, "appointment_id")
        updated = appointment.copy()

        with self._booking_lock:
            existing = self.require(appointment_id)
            if not existing.status.allows_modification:
                raise ValidationError(
                    f"Cannot modify appointment with status: {existing.status.name}", field="status"
                )
            updated.status = existing.status
            updated.reschedule_count = existing.reschedule_count
            updated.reminder_sent = existing.reminder_sent

            schedule_changed = (updated.doctor_id, updated.start, updated.duration_minutes) != (
                existing.doctor_id,
                existing.start,
                existing.duration_minutes,
            )
            if schedule_changed:
                self._validate_duration(updated.duration_minutes)
                self._validate_start(updated.start)
            if updated.patient_id != existing.patient_id:
                self._patients.require(updated.patient_id)
            if updated.doctor_id != existing.doctor_id:
                self._doctors.require(updated.doctor_id)
            ensure_valid(updated, "appointment")

            if schedule_changed:
                self.conflicts.ensure_available(
                    updated.doctor_id,
                    updated.start,
                    updated.duration_minutes,
                    exclude_id=updated.id,
                )
                if updated.start != existing.start:
                    updated.reminder_sent = None
            self._commit(updated)

        logger.info("Updated appointment %s", appointment_id)
        return updated.copy()

    # Status transitions

    def confirm_appointment(self, appointment_id: str) -> Appointment:
        return self._transition(appointment_id, self.lifecycle.confirm)

    def start_appointment(self, appointment_id: str) -> Appointment:
        return self._transition(appointment_id, self.lifecycle.start)

    def complete_appointment(
        self,
        appointment_id: str,
        diagnosis: str,
        prescription: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Appointment:
        return self._transition(
            appointment_id,
            lambda appointment: self.lifecycle.complete(appointment, diagnosis, prescription, notes),
        )

    def cancel_appointment(self, appointment_id: str, reason: str) -> Appointment:
        return self._transition(
            appointment_id, lambda appointment: self.lifecycle.cancel(appointment, reason)
        )

    def mark_no_show(self, appointment_id: str) -> Appointment:
        return self._transition(appointment_id, self.lifecycle.mark_no_show)

    def delete_appointment(self, appointment_id: str) -> Appointment:
        appointment_id = validate_identifier(appointment_id, "appointment_id")
        with self._booking_lock:
            removed = self.store.remove(appointment_id)
        if removed is None:
            raise NotFoundError("Appointment", appointment_id)
        logger.info("Deleted appointment %s", appointment_id)
        return removed.copy()

    def deactivate_appointment(self, appointment_id: str) -> Appointment:
        """Hide an appointment from booking checks and reminders without deleting it."""

        with self._booking_lock:
            appointment = self.require(appointment_id)
            appointment.active = False
            self._commit(appointment)
        logger.info("Deactivated appointment %s", appointment.id)
        return appointment

    # Reminders

    def send_reminders(self) -> List[Appointment]:
        """Notify patients whose appointments fall inside the reminder window.

        Each appointment is reminded once; the send time is stored on the record.
        """

        now = self._clock()
        reminded: List[Appointment] = []
        with self._booking_lock:
            due = sorted_copies(
                self.store.find_where(
                    lambda appointment: appointment.active and appointment.needs_reminder(now)
                ),
                _by_start,
            )
            for appointment in due:
                self._notifier(
                    appointment.patient_id,
                    f"Reminder: appointment {appointment.id} with doctor {appointment.doctor_id} "
                    f"on {appointment.start.isoformat()}",
                )
                appointment.mark_reminder_sent(now)
                self._commit(appointment)
                reminded.append(appointment)
        if reminded:
            logger.info("Sent %d appointment reminders", len(reminded))
        return reminded

    # Queries

    def get_by_id(self, appointment_id: str) -> Optional[Appointment]:
        appointment = self.store.get(appointment_id)
        return appointment.copy() if appointment is not None else None

    def require(self, appointment_id: str) -> Appointment:
        appointment_id = validate_identifier(appointment_id, "appointment_id")
        appointment = self.get_by_id(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    def by_patient(self, patient_id: str) -> List[Appointment]:
        return sorted_copies(
            self.store.find_where(lambda appointment: appointment.patient_id == patient_id), _by_start
        )

    def by_doctor(self, doctor_id: str) -> List[Appointment]:
        return sorted_copies(
            self.store.find_where(lambda appointment: appointment.doctor_id == doctor_id), _by_start
        )

    def by_date(self, day: date) -> List[Appointment]:
        return sorted_copies(
            self.store.find_where(lambda appointment: appointment.start.date() == day), _by_start
        )

    def by_status(self, status: Union[AppointmentStatus, str]) -> List[Appointment]:
        wanted = _coerce_status(status)
        return sorted_copies(
            self.store.find_where(lambda appointment: appointment.status is wanted), _by_start
        )

    def upcoming(self, days: Optional[int] = None) -> List[Appointment]:
        """Active appointments starting from now, optionally limited to the next ``days`` days."""

        now = self._clock()
        horizon = now + timedelta(days=days) if days is not None else None

        def matches(appointment: Appointment) -> bool:
            if appointment.status.is_final or appointment.start < now:
                return False
            return horizon is None or appointment.start <= horizon

        return sorted_copies(self.store.find_where(matches), _by_start)

    def overdue(self) -> List[Appointment]:
        now = self._clock()
        return sorted_copies(
            self.store.find_where(lambda appointment: appointment.is_overdue(now)), _by_start
        )

    def search(self, term: Optional[str]) -> List[Appointment]:
        return sorted_copies(self.store.search(term), _by_start)

    def advanced_search(
        self,
        *,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        status: Union[AppointmentStatus, str, None] = None,
        appointment_type: Optional[str] = None,
        emergency: Optional[bool] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[Appointment]:
        """Filter on every criterion given; ``None`` criteria are ignored."""

        wanted_status = _coerce_status(status) if status is not None else None
        wanted_type = appointment_type.strip().upper() if appointment_type else None

        def matches(appointment: Appointment) -> bool:
            if patient_id and appointment.patient_id != patient_id:
                return False
            if doctor_id and appointment.doctor_id != doctor_id:
                return False
            if wanted_status is not None and appointment.status is not wanted_status:
                return False
            if wanted_type and appointment.appointment_type != wanted_type:
                return False
            if emergency is not None and appointment.emergency != emergency:
                return False
            if start_date and appointment.start.date() < start_date:
                return False
            if end_date and appointment.start.date() > end_date:
                return False
            return True

        return sorted_copies(self.store.find_where(matches), _by_start)

    def page(
        self,
        page_number: int,
        page_size: int,
        sort_key: Optional[Callable[[Appointment], object]] = None,
    ) -> Page[Appointment]:
        return copy_page(self.store.page(page_number, page_size, sort_key or _by_start))

    def list_appointments(self) -> List[Appointment]:
        return copies(self.store.list_sorted())

    def available_slots(
        self,
        doctor_id: str,
        day: date,
        slot_minutes: int = settings.DEFAULT_APPOINTMENT_DURATION,
    ) -> List[datetime]:
        doctor = self._doctors.require(doctor_id)
        if not doctor.active or not doctor.available or not doctor.works_on(day):
            return []
        return self.conflicts.available_slots(doctor.id, day, slot_minutes)

    def next_available_slot(
        self,
        doctor_id: str,
        preferred_day: Optional[date] = None,
        duration_minutes: int = settings.DEFAULT_APPOINTMENT_DURATION,
    ) -> Optional[datetime]:
        doctor = self._doctors.require(doctor_id)
        if not doctor.active or not doctor.available:
            return None
        return self.conflicts.next_available_slot(
            doctor.id,
            preferred_day or self._clock().date(),
            duration_minutes,
            works_on=doctor.works_on,
        )

    def statistics(self) -> AppointmentStatistics:
        return appointment_statistics(self.store.values(), self._clock())

    # Internals

    def _doctor_book(self, doctor_id: str) -> List[Appointment]:
        return self.store.find_where(
            lambda appointment: appointment.doctor_id == doctor_id and not appointment.status.is_final
        )

    def _transition(
        self, appointment_id: str, action: Callable[[Appointment], None]
    ) -> Appointment:
        with self._booking_lock:
            appointment = self.require(appointment_id)
            previous = appointment.status
            action(appointment)
            self._commit(appointment)
        logger.info(
            "Appointment %s moved from %s to %s",
            appointment.id,
            previous.name,
            appointment.status.name,
        )
        return appointment

    def _commit(self, appointment: Appointment) -> None:
        if not self.store.update(appointment.id, appointment.copy()):
            raise NotFoundError("Appointment", appointment.id)

    def _validate_duration(self, duration_minutes: int) -> None:
        if not isinstance(duration_minutes, int) or isinstance(duration_minutes, bool):
            raise ValidationError("Duration must be a whole number of minutes", field="duration_minutes")
        if not 0 < duration_minutes <= settings.MAX_APPOINTMENT_DURATION:
            raise ValidationError(
                f"Duration must be between 1 and {settings.MAX_APPOINTMENT_DURATION} minutes",
                field="duration_minutes",
            )
        if duration_minutes % settings.DURATION_INCREMENT:
            raise ValidationError(
                f"Duration must be a multiple of {settings.DURATION_INCREMENT} minutes",
                field="duration_minutes",
            )

    def _validate_start(self, start: datetime) -> None:
        if not isinstance(start, datetime):
            raise ValidationError("Appointment time must be a datetime", field="start")
        now = self._clock()
        if start < now - timedelta(days=settings.BACKDATE_TOLERANCE_DAYS):
            raise ValidationError("Appointment time is too far in the past", field="start")
        if start > now + timedelta(days=settings.BOOKING_HORIZON_DAYS):
            raise ValidationError(
                f"Appointments can be booked at most {settings.BOOKING_HORIZON_DAYS} days ahead",
                field="start",
            )
        if not self._clinic_start_hour <= start.hour < self._clinic_end_hour:
            raise ValidationError(
                f"Appointment time must be between {self._clinic_start_hour:02d}:00 "
                f"and {self._clinic_end_hour:02d}:00",
                field="start",
            )
