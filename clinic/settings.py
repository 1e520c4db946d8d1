"""Runtime configuration for MediTrack.

Every default can be overridden through an environment variable so the CLI,
the dashboard and the tests can point at their own data directories without
code changes.
"""
from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Optional


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


APPLICATION_NAME = "MediTrack"
VERSION = "1.0.0"

DEFAULT_CLINIC_START_HOUR = _int_env("MEDITRACK_CLINIC_START_HOUR", 9)
DEFAULT_CLINIC_END_HOUR = _int_env("MEDITRACK_CLINIC_END_HOUR", 18)
DEFAULT_APPOINTMENT_DURATION = _int_env("MEDITRACK_DEFAULT_DURATION", 30)
MAX_APPOINTMENT_DURATION = _int_env("MEDITRACK_MAX_DURATION", 480)
DURATION_INCREMENT = 15
BOOKING_HORIZON_DAYS = _int_env("MEDITRACK_BOOKING_HORIZON_DAYS", 365)
# Bookings may be back-dated by this much to allow entering walk-ins.
BACKDATE_TOLERANCE_DAYS = 1
SLOT_SEARCH_DAYS = 30
REMINDER_LEAD_HOURS = _int_env("MEDITRACK_REMINDER_LEAD_HOURS", 24)

TAX_RATE = Decimal("0.18")
SENIOR_CITIZEN_DISCOUNT = Decimal("0.10")
INSURANCE_DISCOUNT = Decimal("0.15")
HIGH_AMOUNT_DISCOUNT = Decimal("0.05")
DISCOUNT_THRESHOLD = Decimal("5000")
EMERGENCY_SURCHARGE = Decimal("1.5")


def _project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def data_dir() -> Path:
    """Return the directory holding the CSV files.

    The directory can be overridden via the ``MEDITRACK_DATA_DIR`` environment variable.
    """

    override = os.getenv("MEDITRACK_DATA_DIR")
    return Path(override) if override else _project_root() / "data"


def reports_dir() -> Path:
    """Return the reports output directory, creating it if necessary."""

    override = os.getenv("MEDITRACK_REPORT_DIR")
    reports_path = Path(override) if override else _project_root() / "reports"
    reports_path.mkdir(parents=True, exist_ok=True)
    return reports_path


def task_log_path(base_dir: Optional[Path] = None) -> Path:
    override = os.getenv("MEDITRACK_TASK_LOG")
    if override:
        return Path(override)
    return (base_dir or data_dir()) / "task_log.json"
