"""Appointment status machine.

``AppointmentLifecycle`` checks every precondition of a transition before it
touches the appointment, so a rejected call leaves the record exactly as it
was. It mutates the object it is given; services hand it a copy and commit the
copy back to the store on success.
"""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable, FrozenSet, Optional

from clinic.errors import IllegalTransitionError, ValidationError
from clinic.scheduling import ConflictChecker

if TYPE_CHECKING:  # pragma: no cover
    from clinic.models import Appointment

__all__ = ["AppointmentStatus", "AppointmentLifecycle"]

logger = logging.getLogger(__name__)


class AppointmentStatus(Enum):
    PENDING = ("Pending", False, 3)
    CONFIRMED = ("Confirmed", False, 4)
    RESCHEDULED = ("Rescheduled", False, 2)
    IN_PROGRESS = ("In Progress", False, 5)
    COMPLETED = ("Completed", True, 1)
    CANCELLED = ("Cancelled", True, 1)
    NO_SHOW = ("No Show", True, 1)

    def __init__(self, display_name: str, is_final: bool, priority: int) -> None:
        self.display_name = display_name
        self.is_final = is_final
        self.priority = priority

    @property
    def is_active(self) -> bool:
        return not self.is_final

    @property
    def allows_modification(self) -> bool:
        return self in (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)

    @property
    def is_billable(self) -> bool:
        return self is AppointmentStatus.COMPLETED

    def valid_transitions(self) -> FrozenSet["AppointmentStatus"]:
        return _TRANSITIONS[self]

    def can_transition_to(self, target: "AppointmentStatus") -> bool:
        return target in _TRANSITIONS[self]

    @classmethod
    def from_name(cls, name: str) -> "AppointmentStatus":
        """Accept either the enum name (``NO_SHOW``) or the display name (``No Show``)."""

        if name is None or not str(name).strip():
            raise ValidationError("Status cannot be empty", field="status")
        wanted = str(name).strip()
        normalized = wanted.upper().replace(" ", "_").replace("-", "_")
        for status in cls:
            if status.name == normalized or status.display_name.lower() == wanted.lower():
                return status
        raise ValidationError(f"Unknown appointment status: {name}", field="status")

    def __str__(self) -> str:
        return self.display_name


_TRANSITIONS = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.RESCHEDULED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
            AppointmentStatus.RESCHEDULED,
        }
    ),
    AppointmentStatus.RESCHEDULED: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


def _require_transition(appointment: "Appointment", target: AppointmentStatus) -> None:
    if not appointment.status.can_transition_to(target):
        raise IllegalTransitionError(appointment.status, target)


class AppointmentLifecycle:
    """Applies status transitions to appointments."""

    def __init__(
        self,
        conflicts: ConflictChecker,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._conflicts = conflicts
        self._clock = clock

    def confirm(self, appointment: "Appointment") -> None:
        _require_transition(appointment, AppointmentStatus.CONFIRMED)
        appointment.status = AppointmentStatus.CONFIRMED
        logger.debug("Appointment %s confirmed", appointment.id)

    def start(self, appointment: "Appointment") -> None:
        if appointment.status is not AppointmentStatus.CONFIRMED:
            raise IllegalTransitionError(appointment.status, AppointmentStatus.IN_PROGRESS)
        appointment.actual_start = self._clock()
        appointment.status = AppointmentStatus.IN_PROGRESS

    def complete(
        self,
        appointment: "Appointment",
        diagnosis: str,
        prescription: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> None:
        if appointment.status is not AppointmentStatus.IN_PROGRESS:
            raise IllegalTransitionError(appointment.status, AppointmentStatus.COMPLETED)
        if diagnosis is None or not diagnosis.strip():
            raise ValidationError("Diagnosis is required to complete an appointment", field="diagnosis")
        ended = self._clock()
        if appointment.actual_start is not None and ended < appointment.actual_start:
            raise ValidationError(
                "Actual end time cannot precede actual start time", field="actual_end"
            )

        appointment.diagnosis = diagnosis.strip()
        if prescription:
            appointment.prescription = prescription.strip()
        if notes:
            appointment.append_note(notes.strip())
        appointment.actual_end = ended
        appointment.status = AppointmentStatus.COMPLETED

    def cancel(self, appointment: "Appointment", reason: str) -> None:
        if appointment.status.is_final:
            raise IllegalTransitionError(appointment.status, AppointmentStatus.CANCELLED)
        if reason is None or not reason.strip():
            raise ValidationError("Cancellation reason is required", field="reason")
        appointment.cancellation_reason = reason.strip()
        appointment.status = AppointmentStatus.CANCELLED

    def mark_no_show(self, appointment: "Appointment") -> None:
        if appointment.status is not AppointmentStatus.CONFIRMED:
            raise IllegalTransitionError(appointment.status, AppointmentStatus.NO_SHOW)
        appointment.status = AppointmentStatus.NO_SHOW

    def reschedule(
        self,
        appointment: "Appointment",
        new_start: datetime,
        reason: Optional[str] = None,
    ) -> None:
        """Move ``appointment`` to ``new_start``, keeping its duration.

        The conflict check runs before any field is written, so a conflict
        leaves status, start and reschedule count untouched.
        """

        if not appointment.status.allows_modification:
            raise IllegalTransitionError(
                appointment.status,
                AppointmentStatus.RESCHEDULED,
                f"Cannot reschedule appointment in {appointment.status.name} status",
            )
        if new_start is None:
            raise ValidationError("New appointment time is required", field="start")
        if new_start < self._clock():
            raise ValidationError("Cannot reschedule to a past time", field="start")

        self._conflicts.ensure_available(
            appointment.doctor_id,
            new_start,
            appointment.duration_minutes,
            exclude_id=appointment.id,
        )

        previous_start = appointment.start
        appointment.start = new_start
        appointment.status = AppointmentStatus.RESCHEDULED
        appointment.reschedule_count += 1
        appointment.reminder_sent = None
        if reason and reason.strip():
            appointment.append_note(f"Rescheduled: {reason.strip()}")
        logger.info(
            "Appointment %s moved from %s to %s",
            appointment.id,
            previous_start.isoformat(),
            new_start.isoformat(),
        )
