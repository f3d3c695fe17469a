"""
Queue Management Service
Owns the clinic queue state machine, ordering, position math and every
mutating queue operation.

Import from here: from queue_management.services import get_queue_engine

Mutations of one clinic are serialized with a per-clinic lock plus a row lock
on the clinic inside a database transaction. Notifications and queue-changed
events are emitted only after that transaction has committed, and their
failures never undo the mutation.
"""
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import date
from typing import List, Optional
import logging
import threading

from django.db import transaction
from django.utils import timezone

from appointments.services import appointment_directory
from communication.exceptions import NotificationDeliveryError
from communication.notification_service import get_notification_dispatcher
from .conf import queue_setting
from .events import ClinicQueueChanged, get_event_bus
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
from .models import ACTIVE_STATUSES, QueueEntry, QueuePriority, QueueStatus, can_transition
from .store import DjangoQueueStore

logger = logging.getLogger(__name__)

BEING_SERVED_MESSAGE = "You have been called - please proceed to reception"


@dataclass
class QueuePosition:
    appointment_id: int
    position: int
    status: str
    priority: int
    total_in_queue: int
    estimated_wait_time_minutes: int
    message: str
    is_queued: bool = True

    def as_dict(self) -> dict:
        return asdict(self)


def position_message(position: int) -> str:
    if position == 1:
        return "You are next in line"
    if position == 2:
        return "1 patient ahead of you"
    return f"{position - 1} patients ahead of you"


class ClinicLocks:  # One in-process mutex per clinic
    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, clinic_id):
        with self._guard:
            lock = self._locks.setdefault(clinic_id, threading.Lock())
        with lock:
            yield


@dataclass
class _SideEffects:
    """Work collected inside a transaction and performed after it commits"""

    your_turn: Optional[QueueEntry] = None
    three_away: Optional[QueueEntry] = None


class QueueEngine:
    """Clinic queue engine: state machine, ordering and staff workflow"""

    def __init__(self, store=None, dispatcher=None, event_bus=None, directory=None, locks=None):
        self.store = store or DjangoQueueStore()
        self.dispatcher = dispatcher
        self.event_bus = event_bus or get_event_bus()
        self.directory = directory or appointment_directory
        self._locks = locks or ClinicLocks()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def check_in(self, appointment_id, priority) -> QueueEntry:
        """
        Put an appointment into its clinic's queue.

        Args:
            appointment_id: Appointment being checked in
            priority: 1 (Normal), 2 (Elderly) or 3 (Emergency)

        Returns:
            The created IN_QUEUE entry

        Raises:
            InvalidPriority, AppointmentNotFound, DuplicateActiveEntry
        """
        priority = self._validate_priority(priority)
        appointment = self.directory.get(appointment_id)
        if appointment is None:
            raise AppointmentNotFound()
        clinic_id = appointment.clinic_id

        effects = _SideEffects()
        with self._locks.hold(clinic_id), transaction.atomic():
            self.store.lock_clinic(clinic_id)
            if self.store.exists_by_appointment_and_status(appointment_id, ACTIVE_STATUSES):
                raise DuplicateActiveEntry()
            entry = self.store.insert(
                clinic_id=clinic_id,
                appointment_id=appointment_id,
                status=QueueStatus.IN_QUEUE,
                priority=priority,
                created_at=timezone.now(),
            )
            effects.three_away = self._stamp_three_away(clinic_id)

        logger.info(
            f"Checked in appointment {appointment_id} to clinic {clinic_id} queue "
            f"(queue id {entry.pk}, priority {priority})"
        )
        self._after_commit(clinic_id, "check_in", effects)
        return entry

    def call_next(self, clinic_id) -> QueueEntry:
        """
        Complete the entry currently being served and call the head of the queue.

        Raises:
            QueueEmpty: nothing is waiting; no entry is touched
        """
        effects = _SideEffects()
        with self._locks.hold(clinic_id), transaction.atomic():
            self.store.lock_clinic(clinic_id)
            active = self.store.list_by_clinic_and_status_ordered(clinic_id, QueueStatus.IN_QUEUE)
            if not active:
                raise QueueEmpty()
            for serving in self.store.list_by_clinic_and_status(clinic_id, QueueStatus.CALLED):
                self._transition(serving, QueueStatus.DONE)
                logger.info(f"Completed queue entry {serving.pk} (appointment {serving.appointment_id})")
            head = self._transition(active[0], QueueStatus.CALLED)
            effects.your_turn = head
            effects.three_away = self._stamp_three_away(clinic_id)

        logger.info(f"Called queue entry {head.pk} (appointment {head.appointment_id}) in clinic {clinic_id}")
        self._after_commit(clinic_id, "call_next", effects)
        return head

    def call_by_appointment(self, appointment_id) -> QueueEntry:
        """
        Call a specific waiting appointment out of order.

        Unlike call_next, an entry already being served is left as CALLED.
        """
        clinic_id = self.directory.clinic_id_for(appointment_id)
        if clinic_id is None:
            raise NotInQueue()

        effects = _SideEffects()
        with self._locks.hold(clinic_id), transaction.atomic():
            self.store.lock_clinic(clinic_id)
            entry = self.store.find_by_appointment_and_status(appointment_id, QueueStatus.IN_QUEUE)
            if entry is None:
                raise NotInQueue()
            self._transition(entry, QueueStatus.CALLED)
            effects.your_turn = entry
            effects.three_away = self._stamp_three_away(clinic_id)

        logger.info(f"Called queue entry {entry.pk} (appointment {appointment_id}) in clinic {clinic_id}")
        self._after_commit(clinic_id, "call_by_appointment", effects)
        return entry

    def update_status(self, queue_id, new_status) -> QueueEntry:
        """
        Move a queue entry to a new status through the state machine.

        Marking an entry MISSED also marks its appointment missed.
        """
        new_status = self._validate_status(new_status)
        entry = self.store.get(queue_id)
        if entry is None:
            raise QueueEntryNotFound()
        clinic_id = entry.clinic_id

        effects = _SideEffects()
        with self._locks.hold(clinic_id), transaction.atomic():
            self.store.lock_clinic(clinic_id)
            entry = self.store.get(queue_id)
            if entry is None:
                raise QueueEntryNotFound()
            if not can_transition(entry.status, new_status):
                raise InvalidTransition(entry.status, new_status)
            if new_status == QueueStatus.IN_QUEUE:
                if self.store.exists_by_appointment_and_status(entry.appointment_id, ACTIVE_STATUSES):
                    raise DuplicateActiveEntry()
                self._reactivate(entry, entry.priority)
                self.directory.mark_scheduled(entry.appointment_id)
            else:
                self._transition(entry, new_status)
            if new_status == QueueStatus.MISSED:
                self.directory.mark_missed(entry.appointment_id)
            effects.three_away = self._stamp_three_away(clinic_id)

        logger.info(f"Updated queue entry {queue_id} (appointment {entry.appointment_id}) to {new_status}")
        self._after_commit(clinic_id, "status_update", effects)
        return entry

    def requeue_missed(self, appointment_id, new_priority) -> QueueEntry:
        """
        Put a missed appointment back in the queue.

        The most recent MISSED row is reused: it keeps its queue id and gets
        the new priority and a fresh check-in time, so it re-enters at the
        back of its priority tier.
        """
        new_priority = self._validate_priority(new_priority)
        clinic_id = self.directory.clinic_id_for(appointment_id)
        if clinic_id is None:
            raise AppointmentNotFound()

        effects = _SideEffects()
        with self._locks.hold(clinic_id), transaction.atomic():
            self.store.lock_clinic(clinic_id)
            entry = self.store.find_by_appointment_and_status(appointment_id, QueueStatus.MISSED)
            if entry is None:
                raise NoMissedEntry()
            if self.store.exists_by_appointment_and_status(appointment_id, ACTIVE_STATUSES):
                raise DuplicateActiveEntry()
            if not can_transition(entry.status, QueueStatus.IN_QUEUE):
                raise InvalidTransition(entry.status, QueueStatus.IN_QUEUE)
            self._reactivate(entry, new_priority)
            self.directory.mark_scheduled(appointment_id)
            effects.three_away = self._stamp_three_away(clinic_id)

        logger.info(
            f"Requeued appointment {appointment_id} as queue entry {entry.pk} "
            f"in clinic {clinic_id} (priority {new_priority})"
        )
        self._after_commit(clinic_id, "requeue", effects)
        return entry

    def mark_appointment_done(self, appointment_id) -> Optional[QueueEntry]:
        """
        Complete the entry being served for an appointment.

        Returns None when the appointment has no CALLED entry. A waiting
        entry has to be called before it can be completed.
        """
        clinic_id = self.directory.clinic_id_for(appointment_id)
        if clinic_id is None:
            raise AppointmentNotFound()

        with self._locks.hold(clinic_id), transaction.atomic():
            self.store.lock_clinic(clinic_id)
            entry = self.store.find_by_appointment_and_status(appointment_id, QueueStatus.CALLED)
            if entry is None:
                if self.store.exists_by_appointment_and_status(appointment_id, [QueueStatus.IN_QUEUE]):
                    raise InvalidTransition(QueueStatus.IN_QUEUE, QueueStatus.DONE)
                return None
            self._transition(entry, QueueStatus.DONE)

        logger.info(f"Completed queue entry {entry.pk} (appointment {appointment_id})")
        self._after_commit(clinic_id, "complete", _SideEffects())
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_active_queue(self, clinic_id) -> List[QueueEntry]:
        """Waiting entries of a clinic, highest priority first, then by check-in time"""
        return self.store.list_by_clinic_and_status_ordered(clinic_id, QueueStatus.IN_QUEUE)

    def get_position(self, appointment_id) -> QueuePosition:
        """
        Compute where an appointment stands in its clinic's queue.

        Raises:
            NotInQueue: the appointment has no waiting or called entry
        """
        for _attempt in range(2):
            entry = self.store.find_by_appointment_and_status(appointment_id, QueueStatus.IN_QUEUE)
            if entry is None:
                called = self.store.find_by_appointment_and_status(appointment_id, QueueStatus.CALLED)
                if called is None:
                    raise NotInQueue()
                return QueuePosition(
                    appointment_id=called.appointment_id,
                    position=0,
                    status=QueueStatus.CALLED.value,
                    priority=called.priority,
                    total_in_queue=self.get_queue_count(called.clinic_id),
                    estimated_wait_time_minutes=0,
                    message=BEING_SERVED_MESSAGE,
                )

            active = self.get_active_queue(entry.clinic_id)
            for index, queued in enumerate(active):
                if queued.pk == entry.pk:
                    position = index + 1
                    return QueuePosition(
                        appointment_id=entry.appointment_id,
                        position=position,
                        status=QueueStatus.IN_QUEUE.value,
                        priority=entry.priority,
                        total_in_queue=len(active),
                        estimated_wait_time_minutes=(position - 1) * queue_setting("MINUTES_PER_PATIENT"),
                        message=position_message(position),
                    )
            # The entry left the queue between the two reads; look again.
        raise NotInQueue()

    def get_missed_entries(self, clinic_id) -> List[QueueEntry]:
        """
        Latest MISSED entry per appointment that is still unresolved.

        Appointments that were completed or are already waiting again are left out.
        """
        latest = {}
        for entry in self.store.list_by_clinic_and_status(clinic_id, QueueStatus.MISSED):
            known = latest.get(entry.appointment_id)
            if known is None or (entry.created_at, entry.pk) > (known.created_at, known.pk):
                latest[entry.appointment_id] = entry

        unresolved = [
            entry for appointment_id, entry in latest.items()
            if not self.store.exists_by_appointment_and_status(
                appointment_id, [QueueStatus.DONE, QueueStatus.IN_QUEUE]
            )
        ]
        return sorted(unresolved, key=lambda e: (e.created_at, e.pk), reverse=True)

    def get_appointment_history(self, appointment_id) -> List[QueueEntry]:
        return self.store.list_by_appointment(appointment_id)

    def is_in_queue(self, appointment_id) -> bool:
        return self.store.exists_by_appointment_and_status(appointment_id, [QueueStatus.IN_QUEUE])

    def get_queue_count(self, clinic_id) -> int:
        return self.store.count_by_clinic_and_status(clinic_id, QueueStatus.IN_QUEUE)

    def get_currently_serving(self, clinic_id) -> Optional[QueueEntry]:
        """Most recently called entry of the clinic, or None"""
        serving = self.store.list_by_clinic_and_status(clinic_id, QueueStatus.CALLED)
        if not serving:
            return None
        return max(serving, key=lambda e: (e.called_at or e.created_at, e.pk))

    def get_completed_summary(self, clinic_id, day: date) -> dict:
        """Patients seen on a day and their average wait between check-in and call, in minutes"""
        completed = self.store.list_by_clinic_status_and_created_on(clinic_id, QueueStatus.DONE, day)
        waits = [
            (entry.called_at - entry.created_at).total_seconds() / 60
            for entry in completed
            if entry.called_at is not None
        ]
        return {
            "clinic_id": clinic_id,
            "date": day.isoformat(),
            "patients_seen": len(completed),
            "average_wait_minutes": round(sum(waits) / len(waits), 1) if waits else 0.0,
        }

    def clinic_id_for(self, appointment_id):
        return self.directory.clinic_id_for(appointment_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_priority(priority):
        if isinstance(priority, bool) or priority not in QueuePriority.values:
            raise InvalidPriority()
        return QueuePriority(priority)

    @staticmethod
    def _validate_status(status):
        if status not in QueueStatus.values:
            raise InvalidStatus()
        return QueueStatus(status)

    def _transition(self, entry, new_status):
        if not can_transition(entry.status, new_status):
            raise InvalidTransition(entry.status, new_status)
        entry.status = new_status
        fields = ["status"]
        if new_status == QueueStatus.CALLED:
            entry.called_at = timezone.now()
            fields.append("called_at")
        return self.store.save(entry, fields)

    def _reactivate(self, entry, priority):
        """Start a new waiting stint on an existing row"""
        entry.status = QueueStatus.IN_QUEUE
        entry.priority = priority
        entry.created_at = timezone.now()
        entry.called_at = None
        entry.three_away_notified_at = None
        return self.store.save(entry, ["status", "priority", "created_at", "called_at", "three_away_notified_at"])

    def _stamp_three_away(self, clinic_id):
        """Claim the entry at the threshold position if it has not been notified in this stint"""
        threshold = queue_setting("THREE_AWAY_POSITION")
        active = self.store.list_by_clinic_and_status_ordered(clinic_id, QueueStatus.IN_QUEUE)
        if len(active) < threshold:
            return None
        entry = active[threshold - 1]
        if entry.three_away_notified_at is not None:
            return None
        entry.three_away_notified_at = timezone.now()
        return self.store.save(entry, ["three_away_notified_at"])

    def _after_commit(self, clinic_id, reason, effects):
        if effects.your_turn is not None:
            self._notify("send_your_turn", effects.your_turn)
        self.event_bus.publish(ClinicQueueChanged(clinic_id=clinic_id, reason=reason))
        if effects.three_away is not None:
            self._notify("send_three_away", effects.three_away)

    def _notify(self, method_name, entry):
        # The mutation is already committed here; a failed notification is logged only.
        try:
            context = self.directory.notification_context(entry.appointment_id, queue_number=entry.pk)
            if context is None:
                return
            dispatcher = self.dispatcher or get_notification_dispatcher()
            getattr(dispatcher, method_name)(context)
        except NotificationDeliveryError as e:
            logger.error(
                f"Queue notification {method_name} failed for appointment {entry.appointment_id}: {e}"
            )
        except Exception:
            logger.exception(
                f"Unexpected error sending queue notification {method_name} for appointment {entry.appointment_id}"
            )


_default_engine = None
_engine_guard = threading.Lock()


def get_queue_engine() -> QueueEngine:
    """Process-wide engine wired to the database store, email dispatcher and default event bus"""
    global _default_engine
    with _engine_guard:
        if _default_engine is None:
            _default_engine = QueueEngine()
        return _default_engine
