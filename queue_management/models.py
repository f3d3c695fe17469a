"""
Queue Management Models
One QueueEntry row per check-in stint of an appointment in a clinic's waiting line.
Rows are never deleted by the engine; DONE and MISSED rows are the audit trail.
"""
from django.db import models
from django.db.models import Q
from django.utils import timezone

from appointments.models import Appointment, Clinic


class QueueStatus(models.TextChoices):
    IN_QUEUE = "IN_QUEUE", "In queue"
    CALLED = "CALLED", "Called"
    DONE = "DONE", "Done"
    MISSED = "MISSED", "Missed"


class QueuePriority(models.IntegerChoices):
    NORMAL = 1, "Normal"
    ELDERLY = 2, "Elderly"
    EMERGENCY = 3, "Emergency"


ACTIVE_STATUSES = (QueueStatus.IN_QUEUE, QueueStatus.CALLED)

ALLOWED_TRANSITIONS = {
    QueueStatus.IN_QUEUE: frozenset({QueueStatus.CALLED, QueueStatus.MISSED}),
    QueueStatus.CALLED: frozenset({QueueStatus.DONE, QueueStatus.MISSED}),
    QueueStatus.MISSED: frozenset({QueueStatus.IN_QUEUE}),
    QueueStatus.DONE: frozenset(),
}


def can_transition(current, new):
    """True when the state machine allows moving an entry from `current` to `new`"""
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


class QueueEntry(models.Model):  # Position of an appointment in a clinic queue
    clinic = models.ForeignKey(Clinic, on_delete=models.CASCADE, related_name="queue_entries")
    appointment = models.ForeignKey(Appointment, on_delete=models.CASCADE, related_name="queue_entries")
    status = models.CharField(max_length=10, choices=QueueStatus.choices, default=QueueStatus.IN_QUEUE)
    priority = models.PositiveSmallIntegerField(choices=QueuePriority.choices, default=QueuePriority.NORMAL)
    created_at = models.DateTimeField(default=timezone.now)
    called_at = models.DateTimeField(null=True, blank=True)
    three_away_notified_at = models.DateTimeField(null=True, blank=True)

    class Meta:  # Meta class implementation
        db_table = "queue_entries"
        ordering = ["-priority", "created_at", "id"]
        verbose_name_plural = "Queue entries"
        indexes = [
            models.Index(fields=["clinic", "status"], name="queue_entry_clinic_status_idx"),
            models.Index(fields=["appointment", "status"], name="queue_entry_appt_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["appointment"],
                condition=Q(status__in=["IN_QUEUE", "CALLED"]),
                name="unique_active_queue_entry_per_appointment",
            ),
        ]

    def __str__(self):
        return f"Queue entry #{self.pk} - appointment {self.appointment_id} ({self.status})"
