"""
Queue persistence

QueueStore lists exactly the lookups the queue engine performs, so the engine
never builds ORM queries itself. DjangoQueueStore is the database-backed
implementation used in production and in tests.
"""
import logging

from django.db import IntegrityError, transaction

from appointments.models import Clinic
from .exceptions import DuplicateActiveEntry
from .models import QueueEntry

logger = logging.getLogger(__name__)

ORDERING = ("-priority", "created_at", "id")
MOST_RECENT_FIRST = ("-created_at", "-id")


class QueueStore:  # Data-access contract consumed by the queue engine
    def insert(self, clinic_id, appointment_id, status, priority, created_at):
        raise NotImplementedError

    def get(self, queue_id):
        raise NotImplementedError

    def save(self, entry, fields):
        raise NotImplementedError

    def lock_clinic(self, clinic_id):
        raise NotImplementedError

    def list_by_clinic_and_status_ordered(self, clinic_id, status):
        raise NotImplementedError

    def list_by_clinic_and_status(self, clinic_id, status):
        raise NotImplementedError

    def find_by_appointment_and_status(self, appointment_id, status):
        raise NotImplementedError

    def exists_by_appointment_and_status(self, appointment_id, statuses):
        raise NotImplementedError

    def list_by_appointment(self, appointment_id):
        raise NotImplementedError

    def count_by_clinic_and_status(self, clinic_id, status):
        raise NotImplementedError

    def list_by_clinic_status_and_created_on(self, clinic_id, status, day):
        raise NotImplementedError


class DjangoQueueStore(QueueStore):
    def insert(self, clinic_id, appointment_id, status, priority, created_at):
        """
        Create a queue entry.

        Raises:
            DuplicateActiveEntry: when the active-entry constraint rejects the row
        """
        try:
            with transaction.atomic():
                return QueueEntry.objects.create(
                    clinic_id=clinic_id,
                    appointment_id=appointment_id,
                    status=status,
                    priority=priority,
                    created_at=created_at,
                )
        except IntegrityError as e:
            logger.warning(f"Active queue entry constraint rejected appointment {appointment_id}: {e}")
            raise DuplicateActiveEntry() from e

    def get(self, queue_id):
        return QueueEntry.objects.filter(pk=queue_id).first()

    def save(self, entry, fields):
        entry.save(update_fields=list(fields))
        return entry

    def lock_clinic(self, clinic_id):
        # SELECT ... FOR UPDATE; a no-op on SQLite, which serializes writers anyway
        list(Clinic.objects.select_for_update().filter(pk=clinic_id).values_list("pk", flat=True))

    def list_by_clinic_and_status_ordered(self, clinic_id, status):
        return list(QueueEntry.objects.filter(clinic_id=clinic_id, status=status).order_by(*ORDERING))

    def list_by_clinic_and_status(self, clinic_id, status):
        return list(QueueEntry.objects.filter(clinic_id=clinic_id, status=status))

    def find_by_appointment_and_status(self, appointment_id, status):
        """Most recent entry of the appointment with the given status, or None"""
        return (
            QueueEntry.objects.filter(appointment_id=appointment_id, status=status)
            .order_by(*MOST_RECENT_FIRST)
            .first()
        )

    def exists_by_appointment_and_status(self, appointment_id, statuses):
        return QueueEntry.objects.filter(appointment_id=appointment_id, status__in=list(statuses)).exists()

    def list_by_appointment(self, appointment_id):
        return list(QueueEntry.objects.filter(appointment_id=appointment_id).order_by("created_at", "id"))

    def count_by_clinic_and_status(self, clinic_id, status):
        return QueueEntry.objects.filter(clinic_id=clinic_id, status=status).count()

    def list_by_clinic_status_and_created_on(self, clinic_id, status, day):
        return list(
            QueueEntry.objects.filter(clinic_id=clinic_id, status=status, created_at__date=day)
        )
