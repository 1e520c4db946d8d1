"""Patient registry."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from clinic.errors import NotFoundError, ValidationError
from clinic.ids import IdAllocator
from clinic.models import Patient, PersonDetails
from datastore import KeyedStore, Page

from .common import copies, copy_page, ensure_valid, require_text, validate_identifier

__all__ = ["PatientService"]

logger = logging.getLogger(__name__)


def _by_name(patient: Patient):
    return (patient.person.last_name.lower(), patient.person.first_name.lower(), patient.id)


def _append_unique(values: Iterable[str], item: str) -> tuple:
    existing = tuple(values)
    if any(value.lower() == item.lower() for value in existing):
        return existing
    return existing + (item,)


class PatientService:
    def __init__(
        self,
        ids: IdAllocator,
        *,
        store: Optional[KeyedStore[Patient]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store: KeyedStore[Patient] = store or KeyedStore(
            "Patient", default_sort_key=_by_name, clock=clock
        )
        self._ids = ids
        self._clock = clock
        self._lock = threading.RLock()

    def create_patient(
        self,
        person: PersonDetails,
        patient_type: str = "OUTPATIENT",
        *,
        insurance_provider: str = "",
        emergency_contact: str = "",
        medical_history: Iterable[str] = (),
        allergies: Iterable[str] = (),
    ) -> Patient:
        patient = Patient(
            id=self._ids.next_id("patient"),
            person=person,
            patient_type=patient_type,
            medical_history=tuple(medical_history),
            allergies=tuple(allergies),
            insurance_provider=insurance_provider,
            emergency_contact=emergency_contact,
            registration_date=self._clock().date(),
        )
        ensure_valid(patient, "patient", self._clock().date())
        self.store.put(patient.id, patient.copy())
        logger.info("Registered patient %s (%s)", patient.id, patient.person.full_name)
        return patient

    def get_by_id(self, patient_id: str) -> Optional[Patient]:
        patient = self.store.get(patient_id)
        return patient.copy() if patient is not None else None

    def require(self, patient_id: str) -> Patient:
        patient_id = validate_identifier(patient_id, "patient_id")
        patient = self.get_by_id(patient_id)
        if patient is None:
            raise NotFoundError("Patient", patient_id)
        return patient

    def update_patient(self, patient: Patient) -> Patient:
        """Replace a patient record. The registration date can never change."""

        with self._lock:
            existing = self.require(patient.id)
            updated = patient.copy()
            updated.registration_date = existing.registration_date
            ensure_valid(updated, "patient", self._clock().date())
            self._commit(updated)
        return updated

    def delete_patient(self, patient_id: str) -> Patient:
        patient_id = validate_identifier(patient_id, "patient_id")
        with self._lock:
            removed = self.store.remove(patient_id)
        if removed is None:
            raise NotFoundError("Patient", patient_id)
        logger.info("Deleted patient %s", patient_id)
        return removed.copy()

    def deactivate_patient(self, patient_id: str) -> Patient:
        def apply(patient: Patient) -> None:
            patient.active = False

        return self._modify(patient_id, apply)

    def record_visit(self, patient_id: str) -> Patient:
        def apply(patient: Patient) -> None:
            patient.visit_count += 1

        return self._modify(patient_id, apply)

    def add_medical_history(self, patient_id: str, entry: str) -> Patient:
        entry = require_text(entry, "medical_history")

        def apply(patient: Patient) -> None:
            patient.medical_history = patient.medical_history + (entry,)

        return self._modify(patient_id, apply)

    def add_allergy(self, patient_id: str, allergy: str) -> Patient:
        allergy = require_text(allergy, "allergy")

        def apply(patient: Patient) -> None:
            patient.allergies = _append_unique(patient.allergies, allergy)

        return self._modify(patient_id, apply)

    def add_medication(self, patient_id: str, medication: str) -> Patient:
        medication = require_text(medication, "medication")

        def apply(patient: Patient) -> None:
            if patient.is_allergic_to(medication):
                logger.warning("Patient %s is allergic to %s", patient.id, medication)
            patient.current_medications = _append_unique(patient.current_medications, medication)

        return self._modify(patient_id, apply)

    def remove_medication(self, patient_id: str, medication: str) -> Patient:
        medication = require_text(medication, "medication")

        def apply(patient: Patient) -> None:
            remaining = tuple(
                current
                for current in patient.current_medications
                if current.lower() != medication.lower()
            )
            if len(remaining) == len(patient.current_medications):
                raise ValidationError(
                    f"Patient {patient.id} is not taking {medication}", field="medication"
                )
            patient.current_medications = remaining

        return self._modify(patient_id, apply)

    def find_where(self, predicate: Callable[[Patient], bool]) -> List[Patient]:
        return copies(self.store.find_where(predicate))

    def search(self, term: Optional[str]) -> List[Patient]:
        return sorted(copies(self.store.search(term)), key=_by_name)

    def list_patients(self, sort_key: Optional[Callable[[Patient], object]] = None) -> List[Patient]:
        return copies(self.store.list_sorted(sort_key))

    def page(
        self,
        page_number: int,
        page_size: int,
        sort_key: Optional[Callable[[Patient], object]] = None,
    ) -> Page[Patient]:
        return copy_page(self.store.page(page_number, page_size, sort_key or _by_name))

    def _modify(self, patient_id: str, apply: Callable[[Patient], None]) -> Patient:
        with self._lock:
            patient = self.require(patient_id)
            apply(patient)
            self._commit(patient)
        return patient

    def _commit(self, patient: Patient) -> None:
        if not self.store.update(patient.id, patient.copy()):
            raise NotFoundError("Patient", patient.id)
