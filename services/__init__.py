"""Use-case layer of MediTrack."""

from .appointments import AppointmentService
from .billing import BillAmounts, BillingService, calculate_amounts
from .container import ClinicServices
from .doctors import DoctorService
from .insights import match_specialization, optimal_duration, recommend_doctors
from .notifications import send_notification
from .patients import PatientService
from .reports import (
    AppointmentStatistics,
    SchedulingInsights,
    appointment_statistics,
    create_statistics_report,
    scheduling_insights,
)

__all__ = [
    "AppointmentService",
    "AppointmentStatistics",
    "BillAmounts",
    "BillingService",
    "ClinicServices",
    "DoctorService",
    "PatientService",
    "SchedulingInsights",
    "appointment_statistics",
    "calculate_amounts",
    "create_statistics_report",
    "match_specialization",
    "optimal_duration",
    "recommend_doctors",
    "scheduling_insights",
    "send_notification",
]
