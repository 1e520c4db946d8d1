"""Doctor registry."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Union

from clinic.errors import NotFoundError, ValidationError
from clinic.ids import IdAllocator
from clinic.models import WEEKDAYS, Doctor, PersonDetails, Specialization
from datastore import KeyedStore, Page

from .common import copies, copy_page, ensure_valid, require_text, validate_identifier
from .insights import recommend_doctors

__all__ = ["DoctorService"]

logger = logging.getLogger(__name__)


def _by_name(doctor: Doctor):
    return (doctor.person.last_name.lower(), doctor.person.first_name.lower(), doctor.id)


class DoctorService:
    """CRUD and queries over the doctor store.

    Every doctor handed out is a copy. Changes only reach the store through
    ``update_doctor`` or the narrower helpers built on it.
    """

    def __init__(
        self,
        ids: IdAllocator,
        *,
        store: Optional[KeyedStore[Doctor]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store: KeyedStore[Doctor] = store or KeyedStore(
            "Doctor", default_sort_key=_by_name, clock=clock
        )
        self._ids = ids
        self._clock = clock
        self._lock = threading.RLock()

    def create_doctor(
        self,
        person: PersonDetails,
        license_number: str,
        specialization: Union[Specialization, str] = Specialization.GENERAL_MEDICINE,
        years_of_experience: int = 0,
        *,
        qualification: str = "",
        department: str = "",
        chamber: str = "",
        consultation_fee: Optional[Decimal] = None,
        working_days: Iterable[str] = WEEKDAYS,
    ) -> Doctor:
        license_number = require_text(license_number, "license_number")
        if not isinstance(specialization, Specialization):
            specialization = Specialization.from_name(specialization)

        with self._lock:
            self._ensure_unique_license(license_number)
            doctor = Doctor(
                id=self._ids.next_id("doctor"),
                person=person,
                license_number=license_number,
                specialization=specialization,
                years_of_experience=years_of_experience,
                consultation_fee=consultation_fee,
                qualification=qualification,
                department=department or specialization.display_name,
                chamber=chamber,
                working_days=tuple(working_days),
            )
            ensure_valid(doctor, "doctor", self._clock().date())
            self.store.put(doctor.id, doctor.copy())

        logger.info("Registered doctor %s (%s)", doctor.id, doctor.full_name)
        return doctor

    def get_by_id(self, doctor_id: str) -> Optional[Doctor]:
        doctor = self.store.get(doctor_id)
        return doctor.copy() if doctor is not None else None

    def require(self, doctor_id: str) -> Doctor:
        doctor_id = validate_identifier(doctor_id, "doctor_id")
        doctor = self.get_by_id(doctor_id)
        if doctor is None:
            raise NotFoundError("Doctor", doctor_id)
        return doctor

    def update_doctor(self, doctor: Doctor) -> Doctor:
        with self._lock:
            self.require(doctor.id)
            self._ensure_unique_license(doctor.license_number, exclude_id=doctor.id)
            ensure_valid(doctor, "doctor", self._clock().date())
            self._commit(doctor)
        return doctor.copy()

    def delete_doctor(self, doctor_id: str) -> Doctor:
        """Remove the doctor outright. Their appointments are left in place."""

        doctor_id = validate_identifier(doctor_id, "doctor_id")
        with self._lock:
            removed = self.store.remove(doctor_id)
        if removed is None:
            raise NotFoundError("Doctor", doctor_id)
        logger.info("Deleted doctor %s", doctor_id)
        return removed.copy()

    def deactivate_doctor(self, doctor_id: str) -> Doctor:
        def apply(doctor: Doctor) -> None:
            doctor.active = False
            doctor.available = False

        return self._modify(doctor_id, apply)

    def set_availability(self, doctor_id: str, available: bool) -> Doctor:
        def apply(doctor: Doctor) -> None:
            if available and not doctor.active:
                raise ValidationError(
                    f"Doctor {doctor.id} is inactive and cannot be made available",
                    field="available",
                )
            doctor.available = bool(available)

        return self._modify(doctor_id, apply)

    def rate_doctor(self, doctor_id: str, rating: float) -> Doctor:
        if not 0.0 <= rating <= 5.0:
            raise ValidationError("Rating must be between 0 and 5", field="rating")

        def apply(doctor: Doctor) -> None:
            doctor.rating = float(rating)

        return self._modify(doctor_id, apply)

    def record_patient_treated(self, doctor_id: str) -> Doctor:
        def apply(doctor: Doctor) -> None:
            doctor.patients_treated += 1

        return self._modify(doctor_id, apply)

    def find_where(self, predicate: Callable[[Doctor], bool]) -> List[Doctor]:
        return copies(self.store.find_where(predicate))

    def search(self, term: Optional[str]) -> List[Doctor]:
        return sorted(copies(self.store.search(term)), key=_by_name)

    def find_by_specialization(
        self, specialization: Union[Specialization, str], *, available_only: bool = True
    ) -> List[Doctor]:
        if not isinstance(specialization, Specialization):
            specialization = Specialization.from_name(specialization)

        def matches(doctor: Doctor) -> bool:
            if doctor.specialization is not specialization or not doctor.active:
                return False
            return doctor.available or not available_only

        return sorted(self.find_where(matches), key=_by_name)

    def recommend_for_symptoms(self, symptoms: Iterable[str]) -> List[Doctor]:
        """Active, available doctors ranked by how well they match ``symptoms``."""

        return recommend_doctors(
            symptoms, self.find_where(lambda doctor: doctor.active and doctor.available)
        )

    def list_doctors(self, sort_key: Optional[Callable[[Doctor], object]] = None) -> List[Doctor]:
        return copies(self.store.list_sorted(sort_key))

    def page(
        self,
        page_number: int,
        page_size: int,
        sort_key: Optional[Callable[[Doctor], object]] = None,
    ) -> Page[Doctor]:
        return copy_page(self.store.page(page_number, page_size, sort_key or _by_name))

    def _modify(self, doctor_id: str, apply: Callable[[Doctor], None]) -> Doctor:
        with self._lock:
            doctor = self.require(doctor_id)
            apply(doctor)
            self._commit(doctor)
        return doctor

    def _commit(self, doctor: Doctor) -> None:
        if not self.store.update(doctor.id, doctor.copy()):
            raise NotFoundError("Doctor", doctor.id)

    def _ensure_unique_license(self, license_number: str, exclude_id: Optional[str] = None) -> None:
        wanted = license_number.strip().lower()
        clash = self.store.find_first(
            lambda doctor: doctor.license_number.strip().lower() == wanted and doctor.id != exclude_id
        )
        if clash is not None:
            raise ValidationError(
                f"License number {license_number} is already registered to doctor {clash.id}",
                field="license_number",
            )
