"""Wiring for the four stores and their services."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from clinic import settings
from clinic.ids import IdAllocator, SequentialIdAllocator
from datastore.csv_files import ClinicSnapshot

from .appointments import AppointmentService
from .billing import BillingService
from .doctors import DoctorService
from .notifications import Notifier, send_notification
from .patients import PatientService

__all__ = ["ClinicServices"]

logger = logging.getLogger(__name__)


class ClinicServices:
    """One instance per running application.

    Services share the id allocator and the clock, so tests can inject
    deterministic versions of both in one place.
    """

    def __init__(
        self,
        ids: Optional[IdAllocator] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
        clinic_start_hour: int = settings.DEFAULT_CLINIC_START_HOUR,
        clinic_end_hour: int = settings.DEFAULT_CLINIC_END_HOUR,
        notifier: Notifier = send_notification,
    ) -> None:
        self.ids = ids or SequentialIdAllocator()
        self.clock = clock
        self.doctors = DoctorService(self.ids, clock=clock)
        self.patients = PatientService(self.ids, clock=clock)
        self.appointments = AppointmentService(
            self.ids,
            self.patients,
            self.doctors,
            clock=clock,
            clinic_start_hour=clinic_start_hour,
            clinic_end_hour=clinic_end_hour,
            notifier=notifier,
        )
        self.billing = BillingService(self.ids, self.appointments, self.patients, clock=clock)

    def create_snapshot(self) -> ClinicSnapshot:
        """Capture every store. Each store is copied under its own read lock."""

        return ClinicSnapshot(
            doctors=self.doctors.store.snapshot(),
            patients=self.patients.store.snapshot(),
            appointments=self.appointments.store.snapshot(),
            bills=self.billing.store.snapshot(),
            taken_at=self.clock(),
        )

    def restore_from_snapshot(self, snapshot: ClinicSnapshot) -> None:
        self.doctors.store.restore(snapshot.doctors)
        self.patients.store.restore(snapshot.patients)
        self.appointments.store.restore(snapshot.appointments)
        self.billing.store.restore(snapshot.bills)
        observe = getattr(self.ids, "observe", None)
        if observe is not None:
            observe(snapshot.identifiers())
        logger.info(
            "Restored %d doctors, %d patients, %d appointments and %d bills",
            len(snapshot.doctors),
            len(snapshot.patients),
            len(snapshot.appointments),
            len(snapshot.bills),
        )

    def summary(self) -> Dict[str, int]:
        return {
            "doctors": self.doctors.store.size(),
            "patients": self.patients.store.size(),
            "appointments": self.appointments.store.size(),
            "bills": self.billing.store.size(),
        }
