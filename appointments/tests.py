from datetime import datetime

from django.core import mail
from django.test import TestCase, override_settings
from django.utils import timezone

from .models import Appointment, AppointmentStatus, Clinic, Doctor, Patient, format_full_name
from .services import AppointmentDirectory


class AppointmentModelTest(TestCase):  # AppointmentModelTest class implementation
    def setUp(self):  # Setup
        self.clinic = Clinic.objects.create(name="Ridge Clinic")
        self.patient = Patient.objects.create(first_name="Ama", last_name="Mensah", email="ama@example.com")

    def test_create_appointment(self):  # Test create appointment
        appointment = Appointment.objects.create(
            patient=self.patient,
            clinic=self.clinic,
            date_time=timezone.now(),
        )
        self.assertEqual(appointment.status, AppointmentStatus.SCHEDULED)
        self.assertIsNone(appointment.doctor)

    def test_full_name_skips_blank_parts(self):  # Test full name skips blank parts
        self.assertEqual(format_full_name("Ama", "Mensah"), "Ama Mensah")
        self.assertEqual(format_full_name(" Ama ", ""), "Ama")
        self.assertEqual(format_full_name(None, "Mensah"), "Mensah")
        self.assertEqual(Doctor(first_name="Kofi", last_name="Boateng").full_name, "Kofi Boateng")


class AppointmentDirectoryTest(TestCase):  # AppointmentDirectoryTest class implementation
    def setUp(self):  # Setup
        self.directory = AppointmentDirectory()
        self.clinic = Clinic.objects.create(name="Ridge Clinic")
        self.doctor = Doctor.objects.create(clinic=self.clinic, first_name="Kofi", last_name="Boateng")
        self.patient = Patient.objects.create(first_name="Ama", last_name="Mensah", email="ama@example.com")
        self.appointment = Appointment.objects.create(
            patient=self.patient,
            clinic=self.clinic,
            doctor=self.doctor,
            date_time=timezone.make_aware(datetime(2025, 3, 14, 9, 30)),
        )

    def test_clinic_id_for(self):  # Test clinic id for
        self.assertEqual(self.directory.clinic_id_for(self.appointment.pk), self.clinic.pk)
        self.assertIsNone(self.directory.clinic_id_for(999999))

    def test_mark_missed_and_scheduled(self):  # Test mark missed and scheduled
        self.directory.mark_missed(self.appointment.pk)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, AppointmentStatus.MISSED)

        self.directory.mark_scheduled(self.appointment.pk)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, AppointmentStatus.SCHEDULED)

    def test_notification_context(self):  # Test notification context
        context = self.directory.notification_context(self.appointment.pk, queue_number=4)

        self.assertEqual(context.to_email, "ama@example.com")
        self.assertEqual(context.patient_name, "Ama Mensah")
        self.assertEqual(context.clinic_name, "Ridge Clinic")
        self.assertEqual(context.doctor_name, "Kofi Boateng")
        self.assertEqual(context.appointment_datetime, "14/03/2025 09:30")
        self.assertEqual(context.queue_number, 4)
        self.assertEqual(context.appointment_number, self.appointment.pk)

    def test_notification_context_requires_email_and_doctor(self):  # Test notification context requires email and doctor
        self.patient.email = None
        self.patient.save()
        self.assertIsNone(self.directory.notification_context(self.appointment.pk))
        self.assertIsNone(self.directory.notification_context(999999))

    @override_settings(EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend")
    def test_send_confirmation(self):  # Test send confirmation
        self.assertTrue(self.directory.send_confirmation(self.appointment.pk))

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["ama@example.com"])
        self.assertIn("Appointment Confirmed", mail.outbox[0].body)
