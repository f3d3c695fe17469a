from datetime import date, datetime, timedelta
from unittest import mock
import threading
import time

from asgiref.testing import ApplicationCommunicator
from django.db import IntegrityError, connections, transaction
from django.dispatch import Signal
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from appointments.models import Appointment, AppointmentStatus, Clinic, Doctor, Patient
from backend.asgi import application
from communication.exceptions import NotificationDeliveryError
from communication.notification_service import NotificationDispatcher
from .events import ClinicQueueChanged, EventBus
from .exceptions import (
    AppointmentNotFound,
    DuplicateActiveEntry,
    InvalidPriority,
    InvalidStatus,
    InvalidTransition,
    NoMissedEntry,
    NotInQueue,
    QueueEmpty,
    QueueEntryNotFound,
)
from .live_updates import ChannelClosed, LiveUpdateHub, PushChannel, StreamChannel
from .models import QueueEntry, QueuePriority, QueueStatus, can_transition
from .services import ClinicLocks, QueueEngine, position_message
from .store import DjangoQueueStore


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent = []

    def send_three_away(self, context):
        self.sent.append(("three_away", context.appointment_number))

    def send_your_turn(self, context):
        self.sent.append(("your_turn", context.appointment_number))

    def send_confirmation(self, context):
        self.sent.append(("confirmation", context.appointment_number))

    def of_kind(self, kind):
        return [appointment_id for sent_kind, appointment_id in self.sent if sent_kind == kind]


class RecordingChannel(PushChannel):
    def __init__(self):
        self.payloads = []
        self.closed = False

    def send(self, payload):
        if self.closed:
            raise ChannelClosed()
        self.payloads.append(payload)

    def close(self):
        self.closed = True


class BrokenChannel(RecordingChannel):
    def send(self, payload):
        raise ChannelClosed("client went away")


class QueueFixtureMixin:
    def make_clinic(self, name="Ridge Clinic"):
        clinic = Clinic.objects.create(name=name)
        Doctor.objects.create(clinic=clinic, first_name="Kofi", last_name="Boateng")
        return clinic

    def make_appointment(self, clinic, first_name="Ama"):
        patient = Patient.objects.create(
            first_name=first_name, last_name="Mensah", email=f"{first_name.lower()}@example.com"
        )
        return Appointment.objects.create(
            patient=patient,
            clinic=clinic,
            doctor=clinic.doctors.first(),
            date_time=timezone.now() + timedelta(hours=1),
        )


class TransitionTableTest(SimpleTestCase):  # TransitionTableTest class implementation
    def test_allowed_transitions(self):  # Test allowed transitions
        self.assertTrue(can_transition(QueueStatus.IN_QUEUE, QueueStatus.CALLED))
        self.assertTrue(can_transition(QueueStatus.IN_QUEUE, QueueStatus.MISSED))
        self.assertTrue(can_transition(QueueStatus.CALLED, QueueStatus.DONE))
        self.assertTrue(can_transition(QueueStatus.CALLED, QueueStatus.MISSED))
        self.assertTrue(can_transition(QueueStatus.MISSED, QueueStatus.IN_QUEUE))

    def test_rejected_transitions(self):  # Test rejected transitions
        self.assertFalse(can_transition(QueueStatus.IN_QUEUE, QueueStatus.DONE))
        self.assertFalse(can_transition(QueueStatus.MISSED, QueueStatus.CALLED))
        self.assertFalse(can_transition(QueueStatus.CALLED, QueueStatus.IN_QUEUE))
        for target in QueueStatus:
            self.assertFalse(can_transition(QueueStatus.DONE, target))

    def test_plain_strings_are_accepted(self):  # Test plain strings are accepted
        self.assertTrue(can_transition("IN_QUEUE", "CALLED"))
        self.assertFalse(can_transition("DONE", "IN_QUEUE"))

    def test_position_messages(self):  # Test position messages
        self.assertEqual(position_message(1), "You are next in line")
        self.assertEqual(position_message(2), "1 patient ahead of you")
        self.assertEqual(position_message(5), "4 patients ahead of you")


class QueueEngineTestCase(QueueFixtureMixin, TestCase):
    def setUp(self):  # Setup
        self.dispatcher = RecordingDispatcher()
        self.events = []
        self.bus = EventBus(Signal())
        self.bus.subscribe(self.record_event)
        self.engine = QueueEngine(dispatcher=self.dispatcher, event_bus=self.bus)
        self.clinic = self.make_clinic()

    def record_event(self, sender, event, **kwargs):
        self.events.append(event)


class CheckInTest(QueueEngineTestCase):  # CheckInTest class implementation
    def test_priority_orders_queue(self):  # Test priority orders queue
        p1 = self.make_appointment(self.clinic, "Ama")
        p2 = self.make_appointment(self.clinic, "Kwame")
        p3 = self.make_appointment(self.clinic, "Efua")
        self.engine.check_in(p1.pk, QueuePriority.NORMAL)
        self.engine.check_in(p2.pk, QueuePriority.NORMAL)
        self.engine.check_in(p3.pk, QueuePriority.EMERGENCY)

        order = [entry.appointment_id for entry in self.engine.get_active_queue(self.clinic.pk)]
        self.assertEqual(order, [p3.pk, p1.pk, p2.pk])
        self.assertEqual(self.engine.get_position(p3.pk).position, 1)

    def test_same_priority_is_first_come_first_served(self):  # Test same priority is first come first served
        a = self.make_appointment(self.clinic, "Ama")
        b = self.make_appointment(self.clinic, "Kwame")
        self.engine.check_in(a.pk, 1)
        self.engine.check_in(b.pk, 1)

        position = self.engine.get_position(b.pk)
        self.assertEqual(position.position, 2)
        self.assertEqual(position.total_in_queue, 2)
        self.assertEqual(position.estimated_wait_time_minutes, 10)
        self.assertEqual(position.message, "1 patient ahead of you")
        self.assertTrue(position.is_queued)

    def test_created_entry(self):  # Test created entry
        appointment = self.make_appointment(self.clinic)
        entry = self.engine.check_in(appointment.pk, QueuePriority.ELDERLY)

        self.assertEqual(entry.status, QueueStatus.IN_QUEUE)
        self.assertEqual(entry.priority, QueuePriority.ELDERLY)
        self.assertEqual(entry.clinic_id, self.clinic.pk)
        self.assertIsNone(entry.called_at)
        self.assertEqual(self.events[-1].clinic_id, self.clinic.pk)
        self.assertEqual(self.events[-1].reason, "check_in")

    def test_duplicate_check_in_conflicts(self):  # Test duplicate check in conflicts
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)

        with self.assertRaises(DuplicateActiveEntry):
            self.engine.check_in(appointment.pk, 2)
        self.assertEqual(QueueEntry.objects.filter(appointment=appointment).count(), 1)

    def test_check_in_while_called_conflicts(self):  # Test check in while called conflicts
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)
        self.engine.call_next(self.clinic.pk)

        with self.assertRaises(DuplicateActiveEntry):
            self.engine.check_in(appointment.pk, 1)

    def test_invalid_priority(self):  # Test invalid priority
        appointment = self.make_appointment(self.clinic)
        for priority in (0, 4, True, "2", None):
            with self.assertRaises(InvalidPriority):
                self.engine.check_in(appointment.pk, priority)
        self.assertFalse(QueueEntry.objects.exists())
        self.assertEqual(self.events, [])

    def test_unknown_appointment(self):  # Test unknown appointment
        with self.assertRaises(AppointmentNotFound):
            self.engine.check_in(999999, 1)

    def test_third_check_in_sends_one_three_away(self):  # Test third check in sends one three away
        appointments = [self.make_appointment(self.clinic, name) for name in ("Ama", "Kwame", "Efua")]
        for appointment in appointments:
            self.engine.check_in(appointment.pk, QueuePriority.NORMAL)

        self.assertEqual(self.dispatcher.of_kind("three_away"), [appointments[2].pk])

        self.engine.get_position(appointments[2].pk)
        self.engine.get_active_queue(self.clinic.pk)
        self.assertEqual(self.dispatcher.of_kind("three_away"), [appointments[2].pk])

    def test_notification_failure_is_not_fatal(self):  # Test notification failure is not fatal
        self.dispatcher.send_three_away = mock.Mock(side_effect=NotificationDeliveryError("smtp down"))
        appointments = [self.make_appointment(self.clinic, name) for name in ("Ama", "Kwame", "Efua")]
        self.engine.check_in(appointments[0].pk, 1)
        self.engine.check_in(appointments[1].pk, 1)

        with self.assertLogs("queue_management.services", level="ERROR"):
            entry = self.engine.check_in(appointments[2].pk, 1)

        self.assertTrue(QueueEntry.objects.filter(pk=entry.pk, status=QueueStatus.IN_QUEUE).exists())
        self.assertEqual(self.engine.get_position(appointments[2].pk).position, 3)

    def test_unexpected_notification_error_still_publishes(self):  # Test unexpected notification error still publishes
        self.dispatcher.send_your_turn = mock.Mock(side_effect=RuntimeError("template missing"))
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)

        with self.assertLogs("queue_management.services", level="ERROR"):
            called = self.engine.call_next(self.clinic.pk)

        self.assertEqual(called.status, QueueStatus.CALLED)
        self.assertEqual(self.events[-1].reason, "call_next")

    def test_context_lookup_failure_is_not_fatal(self):  # Test context lookup failure is not fatal
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)

        with mock.patch.object(
            self.engine.directory, "notification_context", side_effect=RuntimeError("database unavailable")
        ):
            with self.assertLogs("queue_management.services", level="ERROR"):
                called = self.engine.call_next(self.clinic.pk)

        self.assertEqual(QueueEntry.objects.get(pk=called.pk).status, QueueStatus.CALLED)
        self.assertEqual(self.events[-1].reason, "call_next")


class PositionTest(QueueEngineTestCase):  # PositionTest class implementation
    def test_called_entry_is_position_zero(self):  # Test called entry is position zero
        appointments = [self.make_appointment(self.clinic, name) for name in ("Ama", "Kwame", "Efua")]
        for appointment in appointments:
            self.engine.check_in(appointment.pk, 1)
        self.engine.call_next(self.clinic.pk)

        position = self.engine.get_position(appointments[0].pk)
        self.assertEqual(position.position, 0)
        self.assertEqual(position.status, "CALLED")
        self.assertEqual(position.estimated_wait_time_minutes, 0)
        self.assertEqual(position.message, "You have been called - please proceed to reception")
        self.assertEqual(position.total_in_queue, 2)

    def test_not_in_queue(self):  # Test not in queue
        appointment = self.make_appointment(self.clinic)
        with self.assertRaises(NotInQueue):
            self.engine.get_position(appointment.pk)

    def test_done_entry_is_not_in_queue(self):  # Test done entry is not in queue
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)
        self.engine.call_next(self.clinic.pk)
        self.engine.mark_appointment_done(appointment.pk)

        with self.assertRaises(NotInQueue):
            self.engine.get_position(appointment.pk)

    @override_settings(QUEUE_MANAGEMENT={"MINUTES_PER_PATIENT": 15})
    def test_wait_estimate_uses_setting(self):  # Test wait estimate uses setting
        appointments = [self.make_appointment(self.clinic, name) for name in ("Ama", "Kwame", "Efua")]
        for appointment in appointments:
            self.engine.check_in(appointment.pk, 1)

        position = self.engine.get_position(appointments[2].pk)
        self.assertEqual(position.estimated_wait_time_minutes, 30)
        self.assertEqual(position.as_dict()["message"], "2 patients ahead of you")


class CallNextTest(QueueEngineTestCase):  # CallNextTest class implementation
    def test_empty_queue_conflicts_and_changes_nothing(self):  # Test empty queue conflicts and changes nothing
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)
        serving = self.engine.call_next(self.clinic.pk)
        event_count = len(self.events)

        with self.assertRaises(QueueEmpty):
            self.engine.call_next(self.clinic.pk)

        serving.refresh_from_db()
        self.assertEqual(serving.status, QueueStatus.CALLED)
        self.assertEqual(len(self.events), event_count)

    def test_empty_clinic(self):  # Test empty clinic
        with self.assertRaises(QueueEmpty):
            self.engine.call_next(self.clinic.pk)
        self.assertFalse(QueueEntry.objects.exists())

    def test_completes_previous_and_calls_head(self):  # Test completes previous and calls head
        first = self.make_appointment(self.clinic, "Ama")
        second = self.make_appointment(self.clinic, "Kwame")
        self.engine.check_in(first.pk, 1)
        self.engine.check_in(second.pk, 1)

        called_first = self.engine.call_next(self.clinic.pk)
        called_second = self.engine.call_next(self.clinic.pk)

        called_first.refresh_from_db()
        self.assertEqual(called_first.status, QueueStatus.DONE)
        self.assertEqual(called_second.appointment_id, second.pk)
        self.assertEqual(called_second.status, QueueStatus.CALLED)
        self.assertIsNotNone(called_second.called_at)
        self.assertEqual(
            QueueEntry.objects.filter(clinic=self.clinic, status=QueueStatus.CALLED).count(), 1
        )
        self.assertEqual(self.dispatcher.of_kind("your_turn"), [first.pk, second.pk])
        self.assertEqual(self.events[-1].reason, "call_next")

    def test_threshold_re_evaluated_after_call(self):  # Test threshold re evaluated after call
        appointments = [self.make_appointment(self.clinic, name) for name in ("Ama", "Kwame", "Efua", "Yaw")]
        for appointment in appointments:
            self.engine.check_in(appointment.pk, 1)
        self.assertEqual(self.dispatcher.of_kind("three_away"), [appointments[2].pk])

        self.engine.call_next(self.clinic.pk)

        self.assertEqual(self.dispatcher.of_kind("three_away"), [appointments[2].pk, appointments[3].pk])

    def test_emergency_pushes_new_entry_to_threshold(self):  # Test emergency pushes new entry to threshold
        a, b, c = [self.make_appointment(self.clinic, name) for name in ("Ama", "Kwame", "Efua")]
        self.engine.check_in(a.pk, 1)
        self.engine.check_in(b.pk, 1)
        self.engine.check_in(c.pk, 3)

        self.assertEqual(self.dispatcher.of_kind("three_away"), [b.pk])


class CallByAppointmentTest(QueueEngineTestCase):  # CallByAppointmentTest class implementation
    def test_leaves_current_called_entry_untouched(self):  # Test leaves current called entry untouched
        first = self.make_appointment(self.clinic, "Ama")
        second = self.make_appointment(self.clinic, "Kwame")
        third = self.make_appointment(self.clinic, "Efua")
        for appointment in (first, second, third):
            self.engine.check_in(appointment.pk, 1)
        serving = self.engine.call_next(self.clinic.pk)

        called = self.engine.call_by_appointment(third.pk)

        serving.refresh_from_db()
        self.assertEqual(serving.status, QueueStatus.CALLED)
        self.assertEqual(called.status, QueueStatus.CALLED)
        self.assertIsNotNone(called.called_at)
        self.assertEqual(self.engine.get_position(second.pk).position, 1)
        self.assertEqual(self.dispatcher.of_kind("your_turn"), [first.pk, third.pk])
        self.assertEqual(self.engine.get_currently_serving(self.clinic.pk).pk, called.pk)

    def test_not_in_queue(self):  # Test not in queue
        appointment = self.make_appointment(self.clinic)
        with self.assertRaises(NotInQueue):
            self.engine.call_by_appointment(appointment.pk)
        with self.assertRaises(NotInQueue):
            self.engine.call_by_appointment(999999)


class UpdateStatusTest(QueueEngineTestCase):  # UpdateStatusTest class implementation
    def setUp(self):  # Setup
        super().setUp()
        self.appointment = self.make_appointment(self.clinic)
        self.entry = self.engine.check_in(self.appointment.pk, 1)

    def test_missed_marks_appointment_missed(self):  # Test missed marks appointment missed
        entry = self.engine.update_status(self.entry.pk, "MISSED")

        self.assertEqual(entry.status, QueueStatus.MISSED)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, AppointmentStatus.MISSED)
        self.assertEqual(self.events[-1].reason, "status_update")

    def test_invalid_transition(self):  # Test invalid transition
        with self.assertRaises(InvalidTransition):
            self.engine.update_status(self.entry.pk, QueueStatus.DONE)
        self.entry.refresh_from_db()
        self.assertEqual(self.entry.status, QueueStatus.IN_QUEUE)

    def test_done_is_terminal(self):  # Test done is terminal
        self.engine.call_next(self.clinic.pk)
        self.engine.update_status(self.entry.pk, QueueStatus.DONE)

        for target in ("IN_QUEUE", "CALLED", "MISSED"):
            with self.assertRaises(InvalidTransition):
                self.engine.update_status(self.entry.pk, target)

    def test_back_to_queue_reschedules_appointment(self):  # Test back to queue reschedules appointment
        self.engine.update_status(self.entry.pk, QueueStatus.MISSED)

        entry = self.engine.update_status(self.entry.pk, QueueStatus.IN_QUEUE)

        self.assertEqual(entry.status, QueueStatus.IN_QUEUE)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, AppointmentStatus.SCHEDULED)

    def test_called_sets_called_at(self):  # Test called sets called at
        entry = self.engine.update_status(self.entry.pk, QueueStatus.CALLED)
        self.assertIsNotNone(entry.called_at)

    def test_unknown_status_and_entry(self):  # Test unknown status and entry
        with self.assertRaises(InvalidStatus):
            self.engine.update_status(self.entry.pk, "WAITING")
        with self.assertRaises(QueueEntryNotFound):
            self.engine.update_status(999999, "MISSED")


class RequeueTest(QueueEngineTestCase):  # RequeueTest class implementation
    def setUp(self):  # Setup
        super().setUp()
        self.a = self.make_appointment(self.clinic, "Ama")
        self.x = self.make_appointment(self.clinic, "Kwame")
        self.b = self.make_appointment(self.clinic, "Efua")
        self.engine.check_in(self.a.pk, 1)
        self.missed = self.engine.check_in(self.x.pk, 1)
        self.engine.check_in(self.b.pk, 1)
        self.engine.update_status(self.missed.pk, QueueStatus.MISSED)

    def test_requeue_reuses_the_missed_row(self):  # Test requeue reuses the missed row
        missed_at = QueueEntry.objects.get(pk=self.missed.pk).created_at
        rows_before = QueueEntry.objects.count()

        entry = self.engine.requeue_missed(self.x.pk, QueuePriority.ELDERLY)

        self.assertEqual(entry.pk, self.missed.pk)
        self.assertEqual(QueueEntry.objects.count(), rows_before)
        self.assertEqual(entry.status, QueueStatus.IN_QUEUE)
        self.assertEqual(entry.priority, QueuePriority.ELDERLY)
        self.assertGreater(entry.created_at, missed_at)
        self.assertEqual(self.engine.get_position(self.x.pk).position, 1)
        self.x.refresh_from_db()
        self.assertEqual(self.x.status, AppointmentStatus.SCHEDULED)

    def test_same_priority_goes_to_the_back(self):  # Test same priority goes to the back
        self.engine.requeue_missed(self.x.pk, QueuePriority.NORMAL)

        order = [entry.appointment_id for entry in self.engine.get_active_queue(self.clinic.pk)]
        self.assertEqual(order, [self.a.pk, self.b.pk, self.x.pk])

    def test_requeue_starts_a_new_notification_stint(self):  # Test requeue starts a new notification stint
        self.assertEqual(self.dispatcher.of_kind("three_away"), [self.b.pk])

        self.engine.requeue_missed(self.x.pk, QueuePriority.NORMAL)

        self.assertEqual(self.dispatcher.of_kind("three_away"), [self.b.pk, self.x.pk])

    def test_no_missed_entry(self):  # Test no missed entry
        with self.assertRaises(NoMissedEntry):
            self.engine.requeue_missed(self.a.pk, 1)

    def test_already_requeued(self):  # Test already requeued
        self.engine.requeue_missed(self.x.pk, 1)
        with self.assertRaises(NoMissedEntry):
            self.engine.requeue_missed(self.x.pk, 1)

    def test_invalid_priority(self):  # Test invalid priority
        with self.assertRaises(InvalidPriority):
            self.engine.requeue_missed(self.x.pk, 7)
        self.assertEqual(QueueEntry.objects.get(pk=self.missed.pk).status, QueueStatus.MISSED)


class MissedEntriesTest(QueueEngineTestCase):  # MissedEntriesTest class implementation
    def test_only_unresolved_missed_entries(self):  # Test only unresolved missed entries
        waiting_again = self.make_appointment(self.clinic, "Ama")
        still_missed = self.make_appointment(self.clinic, "Kwame")
        completed = self.make_appointment(self.clinic, "Efua")

        for appointment in (waiting_again, still_missed):
            entry = self.engine.check_in(appointment.pk, 1)
            self.engine.update_status(entry.pk, QueueStatus.MISSED)
        self.engine.requeue_missed(waiting_again.pk, 1)

        QueueEntry.objects.create(clinic=self.clinic, appointment=completed, status=QueueStatus.MISSED)
        QueueEntry.objects.create(clinic=self.clinic, appointment=completed, status=QueueStatus.DONE)

        missed = self.engine.get_missed_entries(self.clinic.pk)
        self.assertEqual([entry.appointment_id for entry in missed], [still_missed.pk])

    def test_latest_missed_entry_per_appointment(self):  # Test latest missed entry per appointment
        appointment = self.make_appointment(self.clinic)
        older = QueueEntry.objects.create(
            clinic=self.clinic, appointment=appointment, status=QueueStatus.MISSED,
            created_at=timezone.now() - timedelta(hours=2),
        )
        newer = QueueEntry.objects.create(clinic=self.clinic, appointment=appointment, status=QueueStatus.MISSED)

        missed = self.engine.get_missed_entries(self.clinic.pk)
        self.assertEqual([entry.pk for entry in missed], [newer.pk])
        self.assertNotEqual(newer.pk, older.pk)


class QueueReadsTest(QueueEngineTestCase):  # QueueReadsTest class implementation
    def test_history_and_counts(self):  # Test history and counts
        appointment = self.make_appointment(self.clinic)
        other = self.make_appointment(self.clinic, "Kwame")
        first = self.engine.check_in(appointment.pk, 1)
        self.engine.update_status(first.pk, QueueStatus.MISSED)
        self.engine.requeue_missed(appointment.pk, 2)
        self.engine.check_in(other.pk, 1)

        self.assertEqual([entry.pk for entry in self.engine.get_appointment_history(appointment.pk)], [first.pk])
        self.assertTrue(self.engine.is_in_queue(appointment.pk))
        self.assertEqual(self.engine.get_queue_count(self.clinic.pk), 2)
        self.assertIsNone(self.engine.get_currently_serving(self.clinic.pk))

    def test_mark_appointment_done(self):  # Test mark appointment done
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)

        with self.assertRaises(InvalidTransition):
            self.engine.mark_appointment_done(appointment.pk)

        self.engine.call_next(self.clinic.pk)
        entry = self.engine.mark_appointment_done(appointment.pk)
        self.assertEqual(entry.status, QueueStatus.DONE)
        self.assertIsNone(self.engine.mark_appointment_done(appointment.pk))
        self.assertEqual(self.events[-1].reason, "complete")

    def test_completed_summary(self):  # Test completed summary
        day = date(2025, 3, 14)
        checked_in = timezone.make_aware(datetime(2025, 3, 14, 9, 0))
        for wait_minutes, name in ((10, "Ama"), (20, "Kwame")):
            QueueEntry.objects.create(
                clinic=self.clinic,
                appointment=self.make_appointment(self.clinic, name),
                status=QueueStatus.DONE,
                created_at=checked_in,
                called_at=checked_in + timedelta(minutes=wait_minutes),
            )
        QueueEntry.objects.create(
            clinic=self.clinic,
            appointment=self.make_appointment(self.clinic, "Efua"),
            status=QueueStatus.DONE,
            created_at=checked_in + timedelta(days=1),
            called_at=checked_in + timedelta(days=1, minutes=5),
        )

        summary = self.engine.get_completed_summary(self.clinic.pk, day)

        self.assertEqual(summary["patients_seen"], 2)
        self.assertEqual(summary["average_wait_minutes"], 15.0)
        self.assertEqual(summary["date"], "2025-03-14")

    def test_completed_summary_without_patients(self):  # Test completed summary without patients
        summary = self.engine.get_completed_summary(self.clinic.pk, date(2025, 1, 1))
        self.assertEqual(summary["patients_seen"], 0)
        self.assertEqual(summary["average_wait_minutes"], 0.0)


class QueueStoreTest(QueueFixtureMixin, TestCase):  # QueueStoreTest class implementation
    def setUp(self):  # Setup
        self.store = DjangoQueueStore()
        self.clinic = self.make_clinic()
        self.appointment = self.make_appointment(self.clinic)

    def test_database_rejects_second_active_entry(self):  # Test database rejects second active entry
        QueueEntry.objects.create(clinic=self.clinic, appointment=self.appointment, status=QueueStatus.CALLED)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                QueueEntry.objects.create(
                    clinic=self.clinic, appointment=self.appointment, status=QueueStatus.IN_QUEUE
                )

    def test_insert_reports_duplicate(self):  # Test insert reports duplicate
        self.store.insert(self.clinic.pk, self.appointment.pk, QueueStatus.IN_QUEUE, 1, timezone.now())
        with self.assertRaises(DuplicateActiveEntry):
            self.store.insert(self.clinic.pk, self.appointment.pk, QueueStatus.IN_QUEUE, 1, timezone.now())

    def test_inactive_rows_may_repeat(self):  # Test inactive rows may repeat
        for _ in range(2):
            QueueEntry.objects.create(clinic=self.clinic, appointment=self.appointment, status=QueueStatus.MISSED)
        self.assertEqual(len(self.store.list_by_appointment(self.appointment.pk)), 2)


class ClinicLocksTest(SimpleTestCase):  # ClinicLocksTest class implementation
    def test_hold_is_mutually_exclusive_per_clinic(self):  # Test hold is mutually exclusive per clinic
        locks = ClinicLocks()
        guard = threading.Lock()
        inside = []
        overlaps = []

        def work():
            with locks.hold(3):
                with guard:
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(len(inside))
                time.sleep(0.01)
                with guard:
                    inside.pop()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        self.assertEqual(overlaps, [])

    def test_other_clinics_are_not_blocked(self):  # Test other clinics are not blocked
        locks = ClinicLocks()
        entered = threading.Event()

        def enter_other_clinic():
            with locks.hold(2):
                entered.set()

        with locks.hold(1):
            thread = threading.Thread(target=enter_other_clinic)
            thread.start()
            self.assertTrue(entered.wait(timeout=5))
        thread.join(timeout=5)


class ConcurrentQueueMutationTest(QueueFixtureMixin, TransactionTestCase):
    """Simultaneous mutations on one clinic from several threads"""

    def setUp(self):  # Setup
        self.dispatcher = RecordingDispatcher()
        self.engine = QueueEngine(dispatcher=self.dispatcher, event_bus=EventBus(Signal()))
        self.clinic = self.make_clinic()

    def run_together(self, calls):
        barrier = threading.Barrier(len(calls))
        results, errors = [], []

        def worker(call):
            try:
                barrier.wait(timeout=5)
                results.append(call())
            except Exception as e:
                errors.append(e)
            finally:
                connections.close_all()

        threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return results, errors

    def test_concurrent_check_ins_create_one_active_entry(self):  # Test concurrent check ins create one active entry
        appointment = self.make_appointment(self.clinic)

        results, errors = self.run_together([lambda: self.engine.check_in(appointment.pk, 1)] * 4)

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 3)
        for error in errors:
            self.assertIsInstance(error, DuplicateActiveEntry)
        active = QueueEntry.objects.filter(
            appointment=appointment, status__in=[QueueStatus.IN_QUEUE, QueueStatus.CALLED]
        )
        self.assertEqual(active.count(), 1)

    def test_concurrent_call_next_calls_each_head_once(self):  # Test concurrent call next calls each head once
        appointments = [self.make_appointment(self.clinic, name) for name in ("Ama", "Kwame", "Efua")]
        for appointment in appointments:
            self.engine.check_in(appointment.pk, 1)

        results, errors = self.run_together([lambda: self.engine.call_next(self.clinic.pk)] * 3)

        self.assertEqual(errors, [])
        self.assertEqual(
            sorted(entry.appointment_id for entry in results),
            sorted(appointment.pk for appointment in appointments),
        )
        entries = QueueEntry.objects.filter(clinic=self.clinic)
        self.assertEqual(entries.filter(status=QueueStatus.CALLED).count(), 1)
        self.assertEqual(entries.filter(status=QueueStatus.DONE).count(), 2)
        self.assertEqual(entries.filter(status=QueueStatus.IN_QUEUE).count(), 0)
        self.assertEqual(len(self.dispatcher.of_kind("your_turn")), 3)


class EventBusTest(SimpleTestCase):  # EventBusTest class implementation
    def setUp(self):  # Setup
        self.bus = EventBus(Signal())
        self.received = []

    def handler(self, sender, event, **kwargs):
        self.received.append(event)

    def test_publish_and_unsubscribe(self):  # Test publish and unsubscribe
        self.bus.subscribe(self.handler)
        event = ClinicQueueChanged(clinic_id=3, reason="check_in")
        self.bus.publish(event)
        self.assertEqual(self.received, [event])

        self.bus.unsubscribe(self.handler)
        self.bus.publish(event)
        self.assertEqual(len(self.received), 1)

    def test_failing_subscriber_is_logged(self):  # Test failing subscriber is logged
        def broken(sender, event, **kwargs):
            raise RuntimeError("boom")

        self.bus.subscribe(broken)
        self.bus.subscribe(self.handler)

        with self.assertLogs("queue_management.events", level="ERROR"):
            self.bus.publish(ClinicQueueChanged(clinic_id=3, reason="call_next"))
        self.assertEqual(len(self.received), 1)


class LiveUpdateHubTest(QueueEngineTestCase):  # LiveUpdateHubTest class implementation
    def setUp(self):  # Setup
        super().setUp()
        self.hub = LiveUpdateHub(engine=self.engine, workers=0)
        self.bus.subscribe(self.hub.handle_clinic_changed)

    def test_open_pushes_current_position(self):  # Test open pushes current position
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)
        channel = RecordingChannel()

        self.hub.open_channel(appointment.pk, channel)

        self.assertEqual(channel.payloads[0]["position"], 1)
        self.assertEqual(channel.payloads[0]["appointment_id"], appointment.pk)
        self.assertEqual(self.hub.active_channel_count(), 1)

    def test_new_channel_replaces_previous(self):  # Test new channel replaces previous
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)
        first, second = RecordingChannel(), RecordingChannel()

        self.hub.open_channel(appointment.pk, first)
        self.hub.open_channel(appointment.pk, second)

        self.assertTrue(first.closed)
        self.assertFalse(second.closed)
        self.assertEqual(self.hub.active_channel_count(), 1)
        self.assertFalse(self.hub.close_channel(appointment.pk, first))
        self.assertEqual(self.hub.active_channel_count(), 1)

    def test_change_pushes_to_same_clinic_only(self):  # Test change pushes to same clinic only
        first = self.make_appointment(self.clinic, "Ama")
        second = self.make_appointment(self.clinic, "Kwame")
        other_clinic = self.make_clinic("Harbour Clinic")
        elsewhere = self.make_appointment(other_clinic, "Yaw")
        for appointment in (first, second, elsewhere):
            self.engine.check_in(appointment.pk, 1)
        channel, other_channel = RecordingChannel(), RecordingChannel()
        self.hub.open_channel(second.pk, channel)
        self.hub.open_channel(elsewhere.pk, other_channel)

        self.engine.call_next(self.clinic.pk)

        self.assertEqual([payload["position"] for payload in channel.payloads], [2, 1])
        self.assertEqual(len(other_channel.payloads), 1)

    def test_called_entry_receives_position_zero(self):  # Test called entry receives position zero
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)
        channel = RecordingChannel()
        self.hub.open_channel(appointment.pk, channel)

        self.engine.call_next(self.clinic.pk)

        self.assertEqual(channel.payloads[-1]["position"], 0)
        self.assertEqual(channel.payloads[-1]["status"], "CALLED")

    def test_leaving_queue_sends_terminal_message(self):  # Test leaving queue sends terminal message
        appointment = self.make_appointment(self.clinic)
        entry = self.engine.check_in(appointment.pk, 1)
        channel = RecordingChannel()
        self.hub.open_channel(appointment.pk, channel)

        self.engine.update_status(entry.pk, QueueStatus.MISSED)

        self.assertEqual(
            channel.payloads[-1],
            {"appointment_id": appointment.pk, "error": "Not in queue", "is_queued": False},
        )
        self.assertTrue(channel.closed)
        self.assertEqual(self.hub.active_channel_count(), 0)

    def test_waiting_channel_survives_until_check_in(self):  # Test waiting channel survives until check in
        appointment = self.make_appointment(self.clinic)
        other = self.make_appointment(self.clinic, "Kwame")
        channel = RecordingChannel()

        self.hub.open_channel(appointment.pk, channel)
        self.engine.check_in(other.pk, 1)
        self.engine.check_in(appointment.pk, 1)

        self.assertEqual(
            channel.payloads[0],
            {"appointment_id": appointment.pk, "is_queued": False, "message": "Not in queue yet"},
        )
        self.assertEqual(len(channel.payloads), 2)
        self.assertEqual(channel.payloads[1]["position"], 2)
        self.assertFalse(channel.closed)

    def test_broken_channel_is_dropped(self):  # Test broken channel is dropped
        appointment = self.make_appointment(self.clinic)
        other = self.make_appointment(self.clinic, "Kwame")
        self.engine.check_in(appointment.pk, 1)

        with self.assertLogs("queue_management.live_updates", level="WARNING"):
            self.hub.open_channel(appointment.pk, BrokenChannel())

        self.assertEqual(self.hub.active_channel_count(), 0)
        self.assertEqual(self.engine.check_in(other.pk, 1).status, QueueStatus.IN_QUEUE)

    def test_broken_channel_does_not_fail_engine_call(self):  # Test broken channel does not fail engine call
        appointment = self.make_appointment(self.clinic)
        self.engine.check_in(appointment.pk, 1)
        channel = RecordingChannel()
        self.hub.open_channel(appointment.pk, channel)
        channel.send = mock.Mock(side_effect=ChannelClosed())

        called = self.engine.call_next(self.clinic.pk)

        self.assertEqual(called.status, QueueStatus.CALLED)
        self.assertEqual(self.hub.active_channel_count(), 0)


class LiveUpdateHubPoolTest(SimpleTestCase):  # LiveUpdateHubPoolTest class implementation
    def test_broadcast_runs_on_worker_pool(self):  # Test broadcast runs on worker pool
        engine = mock.Mock()
        engine.clinic_id_for.return_value = 7
        engine.get_position.return_value.as_dict.return_value = {"appointment_id": 1, "position": 1}
        hub = LiveUpdateHub(engine=engine, workers=1)
        channel = RecordingChannel()
        hub.open_channel(1, channel)

        with mock.patch("queue_management.live_updates.close_old_connections"):
            hub.handle_clinic_changed(None, event=ClinicQueueChanged(clinic_id=7, reason="check_in"))
            hub.handle_clinic_changed(None, event=ClinicQueueChanged(clinic_id=8, reason="check_in"))
            hub.shutdown(wait=True)

        self.assertEqual(len(channel.payloads), 2)

    def test_rapid_changes_end_on_latest_position(self):  # Test rapid changes end on latest position
        engine = mock.Mock()
        engine.clinic_id_for.return_value = 7
        engine.get_position.side_effect = [
            mock.Mock(**{"as_dict.return_value": {"appointment_id": 1, "position": position}})
            for position in (3, 2, 1)
        ]
        hub = LiveUpdateHub(engine=engine, workers=4)
        channel = SlowChannel(slow_position=2)
        hub.open_channel(1, channel)

        with mock.patch("queue_management.live_updates.close_old_connections"):
            hub.handle_clinic_changed(None, event=ClinicQueueChanged(clinic_id=7, reason="call_next"))
            self.assertTrue(channel.slow_send_started.wait(timeout=5))
            hub.handle_clinic_changed(None, event=ClinicQueueChanged(clinic_id=7, reason="call_next"))
            hub.shutdown(wait=True)

        self.assertEqual([payload["position"] for payload in channel.payloads], [3, 2, 1])


class SlowChannel(RecordingChannel):
    """Records payloads, pausing while delivering one position"""

    def __init__(self, slow_position):
        super().__init__()
        self.slow_position = slow_position
        self.slow_send_started = threading.Event()

    def send(self, payload):
        if payload.get("position") == self.slow_position:
            self.slow_send_started.set()
            time.sleep(0.2)
        super().send(payload)


class StreamChannelTest(SimpleTestCase):  # StreamChannelTest class implementation
    async def test_stream_emits_events_until_closed(self):  # Test stream emits events until closed
        released = []
        channel = StreamChannel(keepalive_seconds=1, on_release=released.append)
        channel.send({"appointment_id": 4, "position": 2})
        channel.close()

        frames = [frame async for frame in channel.stream()]

        self.assertEqual(frames[0], ": connected\n\n")
        self.assertEqual(frames[1], 'event: queue-update\ndata: {"appointment_id": 4, "position": 2}\n\n')
        self.assertEqual(len(frames), 2)
        self.assertEqual(released, [channel])
        with self.assertRaises(ChannelClosed):
            channel.send({"appointment_id": 4})

    async def test_send_from_another_thread_wakes_stream(self):  # Test send from another thread wakes stream
        channel = StreamChannel(keepalive_seconds=5)
        frames = channel.stream()
        self.assertEqual(await frames.__anext__(), ": connected\n\n")

        sender = threading.Thread(target=channel.send, args=({"appointment_id": 4, "position": 1},))
        sender.start()
        frame = await frames.__anext__()
        sender.join()

        self.assertIn('"position": 1', frame)
        channel.close()
        with self.assertRaises(StopAsyncIteration):
            await frames.__anext__()

    async def test_idle_stream_sends_keepalive(self):  # Test idle stream sends keepalive
        channel = StreamChannel(keepalive_seconds=0.05)
        frames = channel.stream()
        await frames.__anext__()

        self.assertEqual(await frames.__anext__(), ": keep-alive\n\n")
        await frames.aclose()
        self.assertTrue(channel.closed)


class PositionStreamASGITest(SimpleTestCase):  # PositionStreamASGITest class implementation
    def setUp(self):  # Setup
        self.engine = mock.Mock()
        self.engine.clinic_id_for.return_value = 7
        self.engine.get_position.side_effect = NotInQueue()
        self.hub = LiveUpdateHub(engine=self.engine, workers=0)
        patcher = mock.patch("queue_management.views.get_live_update_hub", return_value=self.hub)
        patcher.start()
        self.addCleanup(patcher.stop)

    def stream_scope(self, appointment_id):
        path = f"/api/v1/queue/position/{appointment_id}/stream/"
        return {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"testserver")],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }

    async def test_frames_arrive_while_stream_stays_open(self):  # Test frames arrive while stream stays open
        communicator = ApplicationCommunicator(application, self.stream_scope(5))
        await communicator.send_input({"type": "http.request", "body": b"", "more_body": False})

        start = await communicator.receive_output(timeout=5)
        self.assertEqual(start["type"], "http.response.start")
        self.assertEqual(start["status"], 200)
        headers = {name.lower(): value for name, value in start["headers"]}
        self.assertEqual(headers[b"content-type"], b"text/event-stream")

        connected = await communicator.receive_output(timeout=5)
        self.assertEqual(connected["body"], b": connected\n\n")
        self.assertTrue(connected["more_body"])

        waiting = await communicator.receive_output(timeout=5)
        self.assertIn(b'"message": "Not in queue yet"', waiting["body"])

        self.engine.get_position.side_effect = None
        self.engine.get_position.return_value.as_dict.return_value = {"appointment_id": 5, "position": 2}
        self.hub.handle_clinic_changed(None, event=ClinicQueueChanged(clinic_id=7, reason="check_in"))

        update = await communicator.receive_output(timeout=5)
        self.assertIn(b'"position": 2', update["body"])

        self.hub.close_channel(5)
        final = await communicator.receive_output(timeout=5)
        self.assertFalse(final.get("more_body", False))
        await communicator.wait(timeout=5)
        self.assertEqual(self.hub.active_channel_count(), 0)


class QueueAPITest(QueueFixtureMixin, APITestCase):  # QueueAPITest class implementation
    def setUp(self):  # Setup
        self.client = APIClient()
        self.clinic = self.make_clinic()
        self.appointment = self.make_appointment(self.clinic)

    def check_in(self, appointment, priority=1):
        return self.client.post(
            "/api/v1/queue/check-in/",
            {"appointment_id": appointment.pk, "priority": priority},
            format="json",
        )

    def test_check_in(self):  # Test check in
        response = self.check_in(self.appointment)

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["appointment_id"], self.appointment.pk)
        self.assertEqual(response.data["clinic_id"], self.clinic.pk)
        self.assertEqual(response.data["status"], "IN_QUEUE")
        self.assertIn("queue_id", response.data)

    def test_check_in_errors(self):  # Test check in errors
        self.check_in(self.appointment)

        duplicate = self.check_in(self.appointment)
        self.assertEqual(duplicate.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(duplicate.data["error"], "conflict")

        bad_priority = self.check_in(self.make_appointment(self.clinic, "Kwame"), priority=5)
        self.assertEqual(bad_priority.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(bad_priority.data["error"], "validation_error")

        missing = self.client.post(
            "/api/v1/queue/check-in/", {"appointment_id": 999999, "priority": 1}, format="json"
        )
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)

        malformed = self.client.post("/api/v1/queue/check-in/", {"priority": 1}, format="json")
        self.assertEqual(malformed.status_code, status.HTTP_400_BAD_REQUEST)

    def test_clinic_queue_and_position(self):  # Test clinic queue and position
        second = self.make_appointment(self.clinic, "Kwame")
        self.check_in(self.appointment)
        self.check_in(second, priority=3)

        queue = self.client.get(f"/api/v1/queue/clinic/{self.clinic.pk}/")
        self.assertEqual(queue.status_code, status.HTTP_200_OK)
        self.assertEqual(queue.data["total_in_queue"], 2)
        self.assertEqual([row["appointment_id"] for row in queue.data["queue"]], [second.pk, self.appointment.pk])
        self.assertEqual([row["position"] for row in queue.data["queue"]], [1, 2])
        self.assertEqual(queue.data["queue"][1]["estimated_wait_time_minutes"], 10)

        position = self.client.get(f"/api/v1/queue/position/{self.appointment.pk}/")
        self.assertEqual(position.status_code, status.HTTP_200_OK)
        self.assertEqual(position.data["position"], 2)
        self.assertEqual(position.data["total_in_queue"], 2)
        self.assertTrue(position.data["is_queued"])

        unknown = self.client.get("/api/v1/queue/position/999999/")
        self.assertEqual(unknown.status_code, status.HTTP_404_NOT_FOUND)

    def test_staff_workflow(self):  # Test staff workflow
        empty = self.client.post(f"/api/v1/queue/clinic/{self.clinic.pk}/call-next/")
        self.assertEqual(empty.status_code, status.HTTP_409_CONFLICT)

        entry_id = self.check_in(self.appointment).data["queue_id"]
        called = self.client.post(f"/api/v1/queue/clinic/{self.clinic.pk}/call-next/")
        self.assertEqual(called.status_code, status.HTTP_200_OK)
        self.assertEqual(called.data["queue_id"], entry_id)
        self.assertEqual(called.data["status"], "CALLED")

        serving = self.client.get(f"/api/v1/queue/clinic/{self.clinic.pk}/currently-serving/")
        self.assertEqual(serving.data["status"], "SERVING")
        self.assertEqual(serving.data["current"]["queue_id"], entry_id)

        done = self.client.post(f"/api/v1/queue/complete/{self.appointment.pk}/")
        self.assertEqual(done.data["status"], "DONE")

        idle = self.client.get(f"/api/v1/queue/clinic/{self.clinic.pk}/currently-serving/")
        self.assertEqual(idle.data["status"], "QUEUE_EMPTY")

        history = self.client.get(f"/api/v1/queue/appointment/{self.appointment.pk}/history/")
        self.assertEqual(len(history.data["history"]), 1)
        self.assertFalse(history.data["is_in_queue"])

    def test_call_specific_patient(self):  # Test call specific patient
        self.check_in(self.appointment)
        response = self.client.post(f"/api/v1/queue/call/{self.appointment.pk}/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "CALLED")

        again = self.client.post(f"/api/v1/queue/call/{self.appointment.pk}/")
        self.assertEqual(again.status_code, status.HTTP_404_NOT_FOUND)

    def test_status_update_and_requeue(self):  # Test status update and requeue
        entry_id = self.check_in(self.appointment).data["queue_id"]

        invalid = self.client.patch(f"/api/v1/queue/{entry_id}/status/", {"status": "DONE"}, format="json")
        self.assertEqual(invalid.status_code, status.HTTP_409_CONFLICT)

        unknown = self.client.patch(f"/api/v1/queue/{entry_id}/status/", {"status": "LATE"}, format="json")
        self.assertEqual(unknown.status_code, status.HTTP_400_BAD_REQUEST)

        missed = self.client.patch(f"/api/v1/queue/{entry_id}/status/", {"status": "MISSED"}, format="json")
        self.assertEqual(missed.status_code, status.HTTP_200_OK)
        self.assertEqual(missed.data["status"], "MISSED")

        listed = self.client.get(f"/api/v1/queue/clinic/{self.clinic.pk}/missed/")
        self.assertEqual(listed.data["total_missed"], 1)
        self.assertEqual(listed.data["missed_patients"][0]["queue_id"], entry_id)

        requeued = self.client.post(
            f"/api/v1/queue/requeue/{self.appointment.pk}/", {"priority": 2}, format="json"
        )
        self.assertEqual(requeued.status_code, status.HTTP_200_OK)
        self.assertEqual(requeued.data["queue_id"], entry_id)
        self.assertEqual(requeued.data["status"], "IN_QUEUE")
        self.assertEqual(requeued.data["priority"], 2)

        no_missed = self.client.post(
            f"/api/v1/queue/requeue/{self.appointment.pk}/", {"priority": 2}, format="json"
        )
        self.assertEqual(no_missed.status_code, status.HTTP_409_CONFLICT)

    def test_summary(self):  # Test summary
        response = self.client.get(f"/api/v1/queue/clinic/{self.clinic.pk}/summary/", {"date": "2025-03-14"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["patients_seen"], 0)

        invalid = self.client.get(f"/api/v1/queue/clinic/{self.clinic.pk}/summary/", {"date": "yesterday"})
        self.assertEqual(invalid.status_code, status.HTTP_400_BAD_REQUEST)

    def test_health(self):  # Test health
        response = self.client.get("/api/v1/queue/health/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "UP")
