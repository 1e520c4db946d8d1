"""Rule-based booking helpers: which doctor suits a set of symptoms and how long to book."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from clinic import settings
from clinic.models import Doctor, Specialization

__all__ = [
    "SYMPTOM_SPECIALIZATIONS",
    "match_specialization",
    "optimal_duration",
    "recommend_doctors",
]

logger = logging.getLogger(__name__)

SYMPTOM_SPECIALIZATIONS: Dict[Specialization, Tuple[str, ...]] = {
    Specialization.CARDIOLOGY: ("chest pain", "heart palpitations", "shortness of breath", "high blood pressure"),
    Specialization.DERMATOLOGY: ("skin rash", "acne", "skin infection", "mole changes"),
    Specialization.NEUROLOGY: ("headache", "migraine", "seizure", "memory loss"),
    Specialization.ORTHOPEDICS: ("bone pain", "joint pain", "back pain", "fracture"),
    Specialization.PEDIATRICS: ("child fever", "infant care", "vaccination"),
    Specialization.GENERAL_MEDICINE: ("fever", "cold", "cough", "flu"),
}

_BASE_DURATION = {
    Specialization.GENERAL_MEDICINE: 20,
    Specialization.CARDIOLOGY: 45,
    Specialization.NEUROLOGY: 45,
    Specialization.DERMATOLOGY: 25,
    Specialization.ORTHOPEDICS: 35,
    Specialization.PEDIATRICS: 30,
}
_TYPE_ADJUSTMENT = {"CONSULTATION": 15, "FOLLOW_UP": -10, "EMERGENCY": 20}
MIN_DURATION = 15


def match_specialization(symptom: str) -> Specialization:
    """Map one symptom to a specialization.

    Exact keywords win; otherwise the first keyword that contains, or is
    contained in, the symptom. Unknown symptoms go to general medicine.
    """

    wanted = (symptom or "").strip().lower()
    if not wanted:
        return Specialization.GENERAL_MEDICINE
    for specialization, keywords in SYMPTOM_SPECIALIZATIONS.items():
        if wanted in keywords:
            return specialization
    for specialization, keywords in SYMPTOM_SPECIALIZATIONS.items():
        if any(keyword in wanted or wanted in keyword for keyword in keywords):
            return specialization
    return Specialization.GENERAL_MEDICINE


def recommend_doctors(symptoms: Iterable[str], doctors: Iterable[Doctor]) -> List[Doctor]:
    """Rank doctors whose specialization matches at least one symptom.

    Doctors are ordered by how many symptoms point at their specialization,
    then by years of experience.
    """

    scores: Counter = Counter(
        match_specialization(symptom) for symptom in symptoms or () if symptom and symptom.strip()
    )
    if not scores:
        return []
    ranked = [doctor for doctor in doctors if scores[doctor.specialization] > 0]
    ranked.sort(key=lambda doctor: (-scores[doctor.specialization], -doctor.years_of_experience, doctor.id))
    logger.debug("Recommended %d doctors for symptoms %s", len(ranked), dict(scores))
    return ranked


def optimal_duration(specialization: Specialization, appointment_type: Optional[str] = None) -> int:
    """Suggested booking length in minutes, rounded up to a bookable increment."""

    minutes = _BASE_DURATION.get(specialization, settings.DEFAULT_APPOINTMENT_DURATION)
    if appointment_type:
        minutes += _TYPE_ADJUSTMENT.get(appointment_type.strip().upper().replace("-", "_"), 0)
    minutes = max(MIN_DURATION, minutes)
    increment = settings.DURATION_INCREMENT
    return -(-minutes // increment) * increment
