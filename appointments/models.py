from django.db import models
from django.utils import timezone


class Clinic(models.Model):  # A clinic running its own waiting line
    name = models.CharField(max_length=100)
    address = models.CharField(max_length=255, default='', blank=True)
    telephone_no = models.CharField(max_length=20, default='', blank=True)
    region = models.CharField(max_length=50, default='', blank=True)
    specialty = models.CharField(max_length=100, default='', blank=True)

    class Meta:  # Meta class implementation
        db_table = "clinics"
        ordering = ["name"]

    def __str__(self):
        return self.name


class Doctor(models.Model):  # Doctor attached to a clinic
    clinic = models.ForeignKey(Clinic, on_delete=models.CASCADE, related_name="doctors")
    first_name = models.CharField(max_length=80, default='', blank=True)
    last_name = models.CharField(max_length=80, default='', blank=True)

    class Meta:  # Meta class implementation
        db_table = "doctors"

    @property
    def full_name(self):
        return format_full_name(self.first_name, self.last_name)

    def __str__(self):
        return f"Dr. {self.full_name}"


class Patient(models.Model):  # Patient contact details used for queue notifications
    first_name = models.CharField(max_length=80, default='', blank=True)
    last_name = models.CharField(max_length=80, default='', blank=True)
    email = models.EmailField(null=True, blank=True)
    phone_number = models.CharField(max_length=30, default='', blank=True)

    class Meta:  # Meta class implementation
        db_table = "patients"

    @property
    def full_name(self):
        return format_full_name(self.first_name, self.last_name)

    def __str__(self):
        return self.full_name or f"Patient {self.pk}"


class AppointmentStatus(models.TextChoices):
    SCHEDULED = "scheduled", "Scheduled"
    ARRIVED = "arrived", "Arrived"
    MISSED = "missed", "Missed"
    CANCELLED = "cancelled", "Cancelled"
    COMPLETED = "completed", "Completed"


class Appointment(models.Model):  # Scheduled visit of a patient to a clinic doctor
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name="appointments")
    clinic = models.ForeignKey(Clinic, on_delete=models.CASCADE, related_name="appointments")
    doctor = models.ForeignKey(
        Doctor, on_delete=models.SET_NULL, related_name="appointments", null=True, blank=True
    )
    date_time = models.DateTimeField()
    status = models.CharField(
        max_length=20, choices=AppointmentStatus.choices, default=AppointmentStatus.SCHEDULED
    )
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:  # Meta class implementation
        db_table = "appointments"
        ordering = ["-date_time"]
        indexes = [
            models.Index(fields=["clinic", "date_time"], name="appointment_clinic__b1f0c4_idx"),
            models.Index(fields=["status"], name="appointment_status_5d2a7e_idx"),
        ]

    def __str__(self):
        return f"Appointment #{self.pk} ({self.clinic_id})"


def format_full_name(first_name, last_name):
    """Join first and last name, skipping blank parts"""
    parts = [(first_name or '').strip(), (last_name or '').strip()]
    return " ".join(part for part in parts if part)
