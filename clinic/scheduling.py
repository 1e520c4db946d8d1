"""Scheduling conflict detection for doctors' appointment books."""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

from clinic import settings
from clinic.errors import ConflictError, ValidationError

if TYPE_CHECKING:  # pragma: no cover
    from clinic.models import Appointment

__all__ = ["overlaps", "ConflictChecker", "ActiveAppointmentSupplier"]

logger = logging.getLogger(__name__)

ActiveAppointmentSupplier = Callable[[str], Iterable["Appointment"]]


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Return whether half-open intervals ``[start_a, end_a)`` and ``[start_b, end_b)`` overlap."""

    return start_a < end_b and start_b < end_a


class ConflictChecker:
    """Detects double bookings for a doctor.

    The checker does not know where appointments live. It asks
    ``active_appointments(doctor_id)`` for the doctor's book and filters out
    final statuses and deactivated records itself, so the supplier may be a plain store scan today and
    an indexed lookup later.
    """

    def __init__(
        self,
        active_appointments: ActiveAppointmentSupplier,
        *,
        clinic_start_hour: int = settings.DEFAULT_CLINIC_START_HOUR,
        clinic_end_hour: int = settings.DEFAULT_CLINIC_END_HOUR,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if not 0 <= clinic_start_hour < clinic_end_hour <= 24:
            raise ValueError("Clinic opening hours must satisfy 0 <= start < end <= 24")
        self._active_appointments = active_appointments
        self._clinic_start_hour = clinic_start_hour
        self._clinic_end_hour = clinic_end_hour
        self._clock = clock

    def find_conflict(
        self,
        doctor_id: str,
        start: datetime,
        duration_minutes: int,
        exclude_id: Optional[str] = None,
    ) -> Optional["Appointment"]:
        """Return the first active appointment overlapping the candidate window, if any."""

        end = start + timedelta(minutes=duration_minutes)
        for existing in self._active_appointments(doctor_id):
            if existing.doctor_id != doctor_id or existing.status.is_final or not existing.active:
                continue
            if exclude_id is not None and existing.id == exclude_id:
                continue
            if overlaps(start, end, existing.start, existing.end):
                return existing
        return None

    def ensure_available(
        self,
        doctor_id: str,
        start: datetime,
        duration_minutes: int,
        exclude_id: Optional[str] = None,
    ) -> None:
        conflict = self.find_conflict(doctor_id, start, duration_minutes, exclude_id)
        if conflict is not None:
            logger.info(
                "Rejected booking for doctor %s at %s: overlaps %s",
                doctor_id,
                start.isoformat(),
                conflict.id,
            )
            raise ConflictError(conflict.id, conflict.start, conflict.end)

    def available_slots(self, doctor_id: str, day: date, slot_minutes: int) -> List[datetime]:
        """List free slot start times for ``doctor_id`` on ``day``.

        Weekends and past slots are never offered.
        """

        if slot_minutes <= 0:
            raise ValidationError("Slot duration must be positive", field="slot_minutes")
        if day.weekday() >= 5:
            return []

        now = self._clock()
        booked = [
            appointment
            for appointment in self._active_appointments(doctor_id)
            if appointment.doctor_id == doctor_id
            and appointment.active
            and not appointment.status.is_final
            and appointment.start.date() == day
        ]
        opening = datetime.combine(day, time(hour=self._clinic_start_hour))
        closing = datetime.combine(day, time.min) + timedelta(hours=self._clinic_end_hour)
        step = timedelta(minutes=slot_minutes)

        slots: List[datetime] = []
        slot = opening
        while slot + step <= closing:
            slot_end = slot + step
            if slot >= now and not any(
                overlaps(slot, slot_end, existing.start, existing.end) for existing in booked
            ):
                slots.append(slot)
            slot = slot_end
        return slots

    def next_available_slot(
        self,
        doctor_id: str,
        preferred_day: date,
        duration_minutes: int,
        search_days: int = settings.SLOT_SEARCH_DAYS,
        works_on: Optional[Callable[[date], bool]] = None,
    ) -> Optional[datetime]:
        """Return the earliest free slot within ``search_days`` of ``preferred_day``.

        Days rejected by ``works_on`` are skipped.
        """

        day = preferred_day
        for _ in range(search_days):
            if works_on is None or works_on(day):
                slots = self.available_slots(doctor_id, day, duration_minutes)
                if slots:
                    return slots[0]
            day += timedelta(days=1)
        return None
