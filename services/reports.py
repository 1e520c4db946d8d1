"""Appointment statistics and the printable statistics report.

The statistics mirror the console summary screen: totals per status and per
appointment type, emergencies, today's load, overdue bookings and the revenue
booked on completed appointments. ``create_statistics_report`` renders the
same numbers as a one-page PDF.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, Optional

from clinic import settings
from clinic.lifecycle import AppointmentStatus
from clinic.models import APPOINTMENT_TYPES, Appointment

try:
    from reportlab.lib.pagesizes import letter
    from reportlab.lib.units import inch
    from reportlab.pdfgen import canvas
except ImportError as exc:  # pragma: no cover
    raise ImportError(
        "ReportLab is required to generate statistics reports. Install it with 'pip install reportlab'."
    ) from exc


logger = logging.getLogger(__name__)


@dataclass
class AppointmentStatistics:
    """Container for computed appointment metrics."""

    generated_at: datetime
    total: int = 0
    active: int = 0
    emergencies: int = 0
    today: int = 0
    overdue: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_type: Dict[str, int] = field(default_factory=dict)
    completed_revenue: Decimal = Decimal("0.00")

    @property
    def completion_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.by_status.get(AppointmentStatus.COMPLETED.name, 0) * 100.0 / self.total

    @property
    def no_show_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.by_status.get(AppointmentStatus.NO_SHOW.name, 0) * 100.0 / self.total

    def as_dict(self) -> Dict[str, object]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "total": self.total,
            "active": self.active,
            "emergencies": self.emergencies,
            "today": self.today,
            "overdue": self.overdue,
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
            "completed_revenue": f"{self.completed_revenue:.2f}",
            "completion_rate": round(self.completion_rate, 2),
            "no_show_rate": round(self.no_show_rate, 2),
        }


def appointment_statistics(
    appointments: Iterable[Appointment], now: Optional[datetime] = None
) -> AppointmentStatistics:
    now = now or datetime.now()
    statuses: Counter = Counter({status.name: 0 for status in AppointmentStatus})
    types: Counter = Counter({appointment_type: 0 for appointment_type in APPOINTMENT_TYPES})
    stats = AppointmentStatistics(generated_at=now)

    for appointment in appointments:
        stats.total += 1
        statuses[appointment.status.name] += 1
        types[appointment.appointment_type] += 1
        if not appointment.status.is_final:
            stats.active += 1
        if appointment.emergency:
            stats.emergencies += 1
        if appointment.start.date() == now.date():
            stats.today += 1
        if appointment.is_overdue(now):
            stats.overdue += 1
        if appointment.status.is_billable:
            stats.completed_revenue += appointment.consultation_fee

    stats.by_status = dict(statuses)
    stats.by_type = dict(types)
    logger.info(
        "Computed statistics - %d appointments, %d active, %d overdue",
        stats.total,
        stats.active,
        stats.overdue,
    )
    return stats


DEFAULT_PEAK_HOUR = 10


@dataclass
class SchedulingInsights:
    """When patients book and how often they cancel."""

    total: int = 0
    peak_hour: int = DEFAULT_PEAK_HOUR
    cancellation_rate: int = 0
    hourly_distribution: Dict[int, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "peak_hour": self.peak_hour,
            "cancellation_rate": self.cancellation_rate,
            "hourly_distribution": {str(hour): count for hour, count in sorted(self.hourly_distribution.items())},
        }


def scheduling_insights(appointments: Iterable[Appointment]) -> SchedulingInsights:
    """Count bookings per start hour and the share of cancellations.

    The cancellation rate is a whole percentage. The peak hour falls back to
    10:00 when there is nothing to count; ties go to the earliest hour.
    """

    hours: Counter = Counter()
    cancelled = 0
    for appointment in appointments:
        hours[appointment.start.hour] += 1
        if appointment.status is AppointmentStatus.CANCELLED:
            cancelled += 1

    insights = SchedulingInsights(hourly_distribution=dict(hours))
    insights.total = sum(hours.values())
    if insights.total:
        insights.peak_hour = min(hours, key=lambda hour: (-hours[hour], hour))
        insights.cancellation_rate = cancelled * 100 // insights.total
    return insights


def _report_filename(generated_at: datetime) -> Path:
    return settings.reports_dir() / f"appointment_statistics_{generated_at:%Y%m%d_%H%M%S}.pdf"


def _draw_header(pdf: canvas.Canvas, title: str, generated_at: datetime) -> None:
    pdf.setFont("Helvetica-Bold", 20)
    pdf.drawString(1 * inch, 10.5 * inch, title)
    pdf.setFont("Helvetica", 10)
    pdf.drawString(
        1 * inch,
        10.1 * inch,
        f"Generated on: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
    )


def _draw_statistics(pdf: canvas.Canvas, stats: AppointmentStatistics) -> None:
    pdf.setFont("Helvetica-Bold", 12)
    pdf.drawString(1 * inch, 9.5 * inch, "Overview")
    pdf.setFont("Helvetica", 11)
    overview = (
        f"Total appointments: {stats.total}",
        f"Active appointments: {stats.active}",
        f"Emergency appointments: {stats.emergencies}",
        f"Scheduled today: {stats.today}",
        f"Overdue: {stats.overdue}",
        f"Completion rate: {stats.completion_rate:.2f}%",
        f"No-show rate: {stats.no_show_rate:.2f}%",
        f"Revenue from completed appointments: {stats.completed_revenue:.2f}",
    )
    y = 9.2
    for line in overview:
        pdf.drawString(1.2 * inch, y * inch, line)
        y -= 0.3

    y -= 0.3
    pdf.setFont("Helvetica-Bold", 12)
    pdf.drawString(1 * inch, y * inch, "By Status")
    pdf.setFont("Helvetica", 11)
    for status in AppointmentStatus:
        y -= 0.3
        pdf.drawString(
            1.2 * inch, y * inch, f"{status.display_name}: {stats.by_status.get(status.name, 0)}"
        )

    y -= 0.6
    pdf.setFont("Helvetica-Bold", 12)
    pdf.drawString(1 * inch, y * inch, "By Type")
    pdf.setFont("Helvetica", 11)
    for appointment_type, count in sorted(stats.by_type.items()):
        y -= 0.3
        label = appointment_type.replace("_", " ").title()
        pdf.drawString(1.2 * inch, y * inch, f"{label}: {count}")


def create_statistics_report(
    stats: AppointmentStatistics, path: Optional[Path] = None
) -> Path:
    report_path = Path(path) if path is not None else _report_filename(stats.generated_at)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    pdf = canvas.Canvas(str(report_path), pagesize=letter)
    _draw_header(pdf, f"{settings.APPLICATION_NAME} Appointment Statistics", stats.generated_at)
    _draw_statistics(pdf, stats)
    pdf.showPage()
    pdf.save()
    logger.info("Statistics report created at %s", report_path)
    return report_path
