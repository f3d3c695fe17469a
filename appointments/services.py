"""
Appointment lookups consumed by the queue engine

The queue engine never edits appointments directly: it asks this directory
for the appointment, its clinic, the notification display data, and for the
two status changes a queue can trigger (missed / back to scheduled).
"""
import logging

from django.utils import timezone

from communication.notification_service import NotificationContext, get_notification_dispatcher
from .models import Appointment, AppointmentStatus

logger = logging.getLogger(__name__)

DATE_TIME_FORMAT = "%d/%m/%Y %H:%M"


class AppointmentDirectory:  # Read-mostly view over appointments for the queue engine
    def get(self, appointment_id):
        """Return the appointment or None"""
        return (
            Appointment.objects.select_related("patient", "clinic", "doctor")
            .filter(pk=appointment_id)
            .first()
        )

    def clinic_id_for(self, appointment_id):
        return (
            Appointment.objects.filter(pk=appointment_id)
            .values_list("clinic_id", flat=True)
            .first()
        )

    def mark_missed(self, appointment_id):
        self._set_status(appointment_id, AppointmentStatus.MISSED)

    def mark_scheduled(self, appointment_id):
        self._set_status(appointment_id, AppointmentStatus.SCHEDULED)

    def _set_status(self, appointment_id, status):
        updated = Appointment.objects.filter(pk=appointment_id).update(status=status)
        if updated:
            logger.info(f"Updated appointment {appointment_id} status to {status}")
        else:
            logger.warning(f"Could not update appointment status: appointment {appointment_id} not found")

    def notification_context(self, appointment_id, queue_number=0):
        """
        Build the display data for a patient-facing notification.

        Returns None when the appointment, its patient email, its clinic or
        its doctor is missing, since no message can be addressed then.
        """
        appointment = self.get(appointment_id)
        if appointment is None:
            logger.warning(f"Cannot build notification: appointment {appointment_id} not found")
            return None

        patient = appointment.patient
        if not patient.email or appointment.doctor is None:
            logger.warning(
                f"Cannot build notification: missing patient email or doctor for appointment {appointment_id}"
            )
            return None

        return NotificationContext(
            to_email=patient.email,
            patient_name=patient.full_name,
            clinic_name=appointment.clinic.name,
            doctor_name=appointment.doctor.full_name,
            appointment_datetime=timezone.localtime(appointment.date_time).strftime(DATE_TIME_FORMAT),
            queue_number=queue_number,
            appointment_number=appointment.pk,
        )

    def send_confirmation(self, appointment_id, dispatcher=None):
        """Send the appointment confirmation email; returns False when there is nobody to address"""
        context = self.notification_context(appointment_id)
        if context is None:
            return False
        (dispatcher or get_notification_dispatcher()).send_confirmation(context)
        return True


appointment_directory = AppointmentDirectory()
