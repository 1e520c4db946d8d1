import unittest
from datetime import datetime, timedelta
from typing import List

from clinic.errors import ConflictError, IllegalTransitionError, ValidationError
from clinic.lifecycle import AppointmentLifecycle, AppointmentStatus
from clinic.models import Appointment
from clinic.scheduling import ConflictChecker

NOW = datetime(2026, 1, 5, 8, 0)

ALLOWED = {
    AppointmentStatus.PENDING: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.RESCHEDULED,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    },
    AppointmentStatus.RESCHEDULED: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED},
    AppointmentStatus.IN_PROGRESS: {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED},
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
}


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)


class AppointmentStatusTests(unittest.TestCase):
    def test_transition_table(self) -> None:
        for source, targets in ALLOWED.items():
            self.assertEqual(set(source.valid_transitions()), targets, source)
            for target in AppointmentStatus:
                self.assertEqual(source.can_transition_to(target), target in targets)

    def test_flags(self) -> None:
        finals = {status for status in AppointmentStatus if status.is_final}

        self.assertEqual(
            finals,
            {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW},
        )
        self.assertTrue(AppointmentStatus.PENDING.allows_modification)
        self.assertTrue(AppointmentStatus.CONFIRMED.allows_modification)
        self.assertFalse(AppointmentStatus.RESCHEDULED.allows_modification)
        self.assertTrue(AppointmentStatus.COMPLETED.is_billable)
        self.assertEqual(AppointmentStatus.IN_PROGRESS.priority, 5)

    def test_from_name_accepts_enum_and_display_names(self) -> None:
        self.assertIs(AppointmentStatus.from_name("no_show"), AppointmentStatus.NO_SHOW)
        self.assertIs(AppointmentStatus.from_name("In Progress"), AppointmentStatus.IN_PROGRESS)
        with self.assertRaises(ValidationError):
            AppointmentStatus.from_name("archived")


class AppointmentLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(NOW)
        self.book: List[Appointment] = []
        self.checker = ConflictChecker(
            lambda doctor_id: [item for item in self.book if item.doctor_id == doctor_id],
            clock=self.clock,
        )
        self.lifecycle = AppointmentLifecycle(self.checker, self.clock)
        self.appointment = self._appointment("A00001", NOW.replace(hour=10))

    def _appointment(self, appointment_id: str, start: datetime) -> Appointment:
        appointment = Appointment(
            id=appointment_id,
            patient_id="P00001",
            doctor_id="D00001",
            start=start,
            duration_minutes=30,
            reason="Checkup",
        )
        self.book.append(appointment)
        return appointment

    def test_happy_path_to_completion(self) -> None:
        self.lifecycle.confirm(self.appointment)
        self.lifecycle.start(self.appointment)
        self.clock.advance(20)
        self.lifecycle.complete(self.appointment, "Healthy", "Rest", "Follow up in a month")

        self.assertIs(self.appointment.status, AppointmentStatus.COMPLETED)
        self.assertEqual(self.appointment.actual_start, NOW)
        self.assertEqual(self.appointment.actual_end, NOW + timedelta(minutes=20))
        self.assertEqual(self.appointment.diagnosis, "Healthy")
        self.assertEqual(self.appointment.prescription, "Rest")
        self.assertIn("Follow up", self.appointment.notes)

    def test_no_show_is_terminal(self) -> None:
        self.lifecycle.confirm(self.appointment)
        self.lifecycle.mark_no_show(self.appointment)

        with self.assertRaises(IllegalTransitionError) as context:
            self.lifecycle.confirm(self.appointment)

        self.assertIn("NO_SHOW is terminal", str(context.exception))
        self.assertIs(context.exception.current, AppointmentStatus.NO_SHOW)
        self.assertIs(context.exception.requested, AppointmentStatus.CONFIRMED)

    def test_start_requires_confirmation(self) -> None:
        with self.assertRaises(IllegalTransitionError):
            self.lifecycle.start(self.appointment)
        self.assertIs(self.appointment.status, AppointmentStatus.PENDING)
        self.assertIsNone(self.appointment.actual_start)

    def test_complete_requires_in_progress_and_diagnosis(self) -> None:
        self.lifecycle.confirm(self.appointment)
        with self.assertRaises(IllegalTransitionError):
            self.lifecycle.complete(self.appointment, "Healthy")

        self.lifecycle.start(self.appointment)
        with self.assertRaises(ValidationError):
            self.lifecycle.complete(self.appointment, "  ")
        self.assertIs(self.appointment.status, AppointmentStatus.IN_PROGRESS)

    def test_complete_rejects_end_before_start(self) -> None:
        self.lifecycle.confirm(self.appointment)
        self.lifecycle.start(self.appointment)
        self.clock.advance(-5)

        with self.assertRaises(ValidationError):
            self.lifecycle.complete(self.appointment, "Healthy")
        self.assertIsNone(self.appointment.actual_end)

    def test_cancel_requires_reason_and_active_status(self) -> None:
        with self.assertRaises(ValidationError):
            self.lifecycle.cancel(self.appointment, "")
        self.assertIs(self.appointment.status, AppointmentStatus.PENDING)

        self.lifecycle.cancel(self.appointment, "Patient travelling")
        self.assertEqual(self.appointment.cancellation_reason, "Patient travelling")

        with self.assertRaises(IllegalTransitionError):
            self.lifecycle.cancel(self.appointment, "again")

    def test_mark_no_show_only_from_confirmed(self) -> None:
        with self.assertRaises(IllegalTransitionError):
            self.lifecycle.mark_no_show(self.appointment)

    def test_reschedule_moves_and_counts(self) -> None:
        new_start = NOW.replace(hour=14)

        self.lifecycle.reschedule(self.appointment, new_start, "Doctor in surgery")

        self.assertEqual(self.appointment.start, new_start)
        self.assertIs(self.appointment.status, AppointmentStatus.RESCHEDULED)
        self.assertEqual(self.appointment.reschedule_count, 1)
        self.assertIn("Doctor in surgery", self.appointment.notes)

    def test_reschedule_over_own_slot_is_allowed(self) -> None:
        self.lifecycle.reschedule(self.appointment, NOW.replace(hour=10, minute=15))

        self.assertEqual(self.appointment.start, NOW.replace(hour=10, minute=15))

    def test_reschedule_conflict_changes_nothing(self) -> None:
        self._appointment("A00002", NOW.replace(hour=11))
        before = self.appointment.copy()

        with self.assertRaises(ConflictError):
            self.lifecycle.reschedule(self.appointment, NOW.replace(hour=11, minute=15))

        self.assertEqual(self.appointment, before)

    def test_reschedule_rejects_past_time_and_locked_statuses(self) -> None:
        with self.assertRaises(ValidationError):
            self.lifecycle.reschedule(self.appointment, NOW - timedelta(hours=1))

        self.lifecycle.reschedule(self.appointment, NOW.replace(hour=15))
        with self.assertRaises(IllegalTransitionError):
            self.lifecycle.reschedule(self.appointment, NOW.replace(hour=16))
        self.assertEqual(self.appointment.reschedule_count, 1)

    def test_every_illegal_pair_raises_and_keeps_status(self) -> None:
        operations = {
            AppointmentStatus.CONFIRMED: lambda item: self.lifecycle.confirm(item),
            AppointmentStatus.IN_PROGRESS: lambda item: self.lifecycle.start(item),
            AppointmentStatus.COMPLETED: lambda item: self.lifecycle.complete(item, "Dx"),
            AppointmentStatus.CANCELLED: lambda item: self.lifecycle.cancel(item, "reason"),
            AppointmentStatus.NO_SHOW: lambda item: self.lifecycle.mark_no_show(item),
            AppointmentStatus.RESCHEDULED: lambda item: self.lifecycle.reschedule(
                item, NOW.replace(hour=16)
            ),
        }
        for source in AppointmentStatus:
            for target, operation in operations.items():
                if target in ALLOWED[source]:
                    continue
                appointment = Appointment(
                    id="A09999",
                    patient_id="P00001",
                    doctor_id="D00009",
                    start=NOW.replace(hour=12),
                    status=source,
                )
                with self.assertRaises(IllegalTransitionError, msg=f"{source.name}->{target.name}"):
                    operation(appointment)
                self.assertIs(appointment.status, source)


if __name__ == "__main__":
    unittest.main()
