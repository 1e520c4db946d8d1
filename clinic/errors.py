"""Error taxonomy shared by the store, the scheduling rules and the services."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

__all__ = [
    "ClinicError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "IllegalTransitionError",
    "ConcurrencyInvariantViolation",
]


class ClinicError(Exception):
    """Base exception for MediTrack domain errors.

    ``kind`` is a short tag that callers (the CLI, the dashboard) can switch on
    without importing every subclass.
    """

    kind = "error"


class ValidationError(ClinicError, ValueError):
    """Raised when input is malformed or out of range."""

    kind = "validation"

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(ClinicError, LookupError):
    """Raised when a referenced doctor, patient, appointment or bill is missing."""

    kind = "not_found"

    def __init__(self, entity: str, key: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{entity} with ID '{key}' not found")
        self.entity = entity
        self.key = key

    def __str__(self) -> str:
        return str(self.args[0])


class ConflictError(ClinicError):
    """Raised when a booking overlaps an active appointment of the same doctor."""

    kind = "conflict"

    def __init__(self, appointment_id: str, start: datetime, end: datetime) -> None:
        super().__init__(
            f"Appointment conflicts with existing appointment {appointment_id} "
            f"({start:%d/%m/%Y %H:%M} - {end:%H:%M})"
        )
        self.appointment_id = appointment_id
        self.start = start
        self.end = end


class IllegalTransitionError(ClinicError):
    """Raised when an appointment status change is not in the transition table."""

    kind = "illegal_transition"

    def __init__(self, current: object, requested: object, message: Optional[str] = None) -> None:
        current_name = getattr(current, "name", str(current))
        requested_name = getattr(requested, "name", str(requested))
        if message is None:
            if getattr(current, "is_final", False):
                message = (
                    f"Cannot move appointment from {current_name} to {requested_name}: "
                    f"{current_name} is terminal"
                )
            else:
                message = f"Cannot move appointment from {current_name} to {requested_name}"
        super().__init__(message)
        self.current = current
        self.requested = requested


class ConcurrencyInvariantViolation(ClinicError, RuntimeError):
    """Internal assertion failure inside the keyed store. Never recoverable."""

    kind = "invariant"
