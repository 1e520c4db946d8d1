"""Billing for completed appointments."""
from __future__ import annotations

import csv
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from clinic import settings
from clinic.errors import NotFoundError, ValidationError
from clinic.ids import IdAllocator
from clinic.models import Bill, quantize_amount
from datastore import KeyedStore

from .appointments import AppointmentService
from .common import copies, require_text, sorted_copies, validate_identifier
from .patients import PatientService

__all__ = ["BillAmounts", "BillingService", "calculate_amounts"]

LOGGER = logging.getLogger(__name__)

PAYMENT_METHODS = ("CASH", "CARD", "UPI", "INSURANCE", "BANK_TRANSFER")


@dataclass(frozen=True)
class BillAmounts:
    base: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


def _normalize_decimal(value: Union[float, str, Decimal]) -> Decimal:
    try:
        return quantize_amount(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValidationError(f"Invalid currency amount: {value}", field="amount") from exc


def calculate_amounts(base: Union[Decimal, str, float], senior: bool, insured: bool) -> BillAmounts:
    """Apply discounts, then tax on the discounted amount.

    Discounts add up: 10% for senior citizens, 15% for insured patients and 5%
    when the base amount reaches the high-amount threshold.
    """

    base_amount = _normalize_decimal(base)
    if base_amount < 0:
        raise ValidationError("Bill amount cannot be negative", field="amount")

    rate = Decimal("0")
    if senior:
        rate += settings.SENIOR_CITIZEN_DISCOUNT
    if insured:
        rate += settings.INSURANCE_DISCOUNT
    if base_amount >= settings.DISCOUNT_THRESHOLD:
        rate += settings.HIGH_AMOUNT_DISCOUNT

    discount = quantize_amount(base_amount * rate)
    tax = quantize_amount((base_amount - discount) * settings.TAX_RATE)
    total = quantize_amount(base_amount - discount + tax)
    return BillAmounts(base=base_amount, discount=discount, tax=tax, total=total)


class BillingService:
    """Creates one bill per completed appointment and records its payment."""

    def __init__(
        self,
        ids: IdAllocator,
        appointments: AppointmentService,
        patients: PatientService,
        *,
        store: Optional[KeyedStore[Bill]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store: KeyedStore[Bill] = store or KeyedStore(
            "Bill", default_sort_key=lambda bill: (bill.created_at, bill.id), clock=clock
        )
        self._ids = ids
        self._appointments = appointments
        self._patients = patients
        self._clock = clock
        self._lock = threading.RLock()

    def generate_bill(self, appointment_id: str) -> Bill:
        appointment = self._appointments.require(appointment_id)
        if not appointment.status.is_billable:
            raise ValidationError(
                f"Appointment {appointment.id} is {appointment.status.name}; only completed "
                "appointments can be billed",
                field="appointment_id",
            )
        patient = self._patients.require(appointment.patient_id)
        now = self._clock()
        amounts = calculate_amounts(
            appointment.consultation_fee,
            senior=patient.person.is_senior(now.date()),
            insured=patient.has_insurance,
        )

        with self._lock:
            existing = self.bill_for_appointment(appointment.id)
            if existing is not None:
                raise ValidationError(
                    f"Appointment {appointment.id} is already billed as {existing.id}",
                    field="appointment_id",
                )
            bill = Bill(
                id=self._ids.next_id("bill"),
                appointment_id=appointment.id,
                patient_id=appointment.patient_id,
                doctor_id=appointment.doctor_id,
                base_amount=amounts.base,
                discount_amount=amounts.discount,
                tax_amount=amounts.tax,
                total_amount=amounts.total,
                created_at=now,
            )
            self.store.put(bill.id, bill.copy())

        LOGGER.info(
            "Generated bill %s for appointment %s: total %s",
            bill.id,
            appointment.id,
            bill.total_amount,
        )
        return bill

    def record_payment(self, bill_id: str, amount: Union[Decimal, str, float], method: str) -> Bill:
        method = require_text(method, "method").upper()
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {method}", field="method")
        paid_amount = _normalize_decimal(amount)

        with self._lock:
            bill = self.require(bill_id)
            if bill.paid:
                raise ValidationError(f"Bill {bill.id} is already paid", field="bill_id")
            if paid_amount != bill.total_amount:
                raise ValidationError(
                    f"Payment of {paid_amount} does not match bill total {bill.total_amount}",
                    field="amount",
                )
            bill.paid = True
            bill.paid_at = self._clock()
            bill.payment_method = method
            self.store.update(bill.id, bill.copy())

        LOGGER.info("Recorded %s payment of %s for bill %s", method, paid_amount, bill.id)
        return bill

    def get_by_id(self, bill_id: str) -> Optional[Bill]:
        bill = self.store.get(bill_id)
        return bill.copy() if bill is not None else None

    def require(self, bill_id: str) -> Bill:
        bill_id = validate_identifier(bill_id, "bill_id")
        bill = self.get_by_id(bill_id)
        if bill is None:
            raise NotFoundError("Bill", bill_id)
        return bill

    def bill_for_appointment(self, appointment_id: str) -> Optional[Bill]:
        bill = self.store.find_first(lambda candidate: candidate.appointment_id == appointment_id)
        return bill.copy() if bill is not None else None

    def bills_for_patient(self, patient_id: str) -> List[Bill]:
        return sorted_copies(
            self.store.find_where(lambda bill: bill.patient_id == patient_id),
            lambda bill: (bill.created_at, bill.id),
        )

    def unpaid_bills(self) -> List[Bill]:
        return copies(self.store.find_where(lambda bill: not bill.paid))

    def total_revenue(self) -> Decimal:
        paid = self.store.find_where(lambda bill: bill.paid)
        return quantize_amount(sum((bill.total_amount for bill in paid), Decimal("0")))

    def export_report(self, path: Path | str, bills: Optional[Iterable[Bill]] = None) -> Path:
        """Append bills to a CSV ledger, writing the header on first use."""

        report_path = Path(path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        fieldnames = [
            "bill_id",
            "appointment_id",
            "patient_id",
            "base_amount",
            "discount_amount",
            "tax_amount",
            "total_amount",
            "paid",
            "payment_method",
        ]
        rows = list(bills) if bills is not None else self.store.list_sorted()
        file_exists = report_path.exists()

        with report_path.open("a", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=fieldnames)
            if not file_exists:
                writer.writeheader()
            for bill in rows:
                writer.writerow(
                    {
                        "bill_id": bill.id,
                        "appointment_id": bill.appointment_id,
                        "patient_id": bill.patient_id,
                        "base_amount": f"{bill.base_amount:.2f}",
                        "discount_amount": f"{bill.discount_amount:.2f}",
                        "tax_amount": f"{bill.tax_amount:.2f}",
                        "total_amount": f"{bill.total_amount:.2f}",
                        "paid": "true" if bill.paid else "false",
                        "payment_method": bill.payment_method,
                    }
                )
        LOGGER.info("Exported %d bills to %s", len(rows), report_path)
        return report_path
