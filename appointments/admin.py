from django.contrib import admin
from .models import Appointment, Clinic, Doctor, Patient

@admin.register(Clinic)
class ClinicAdmin(admin.ModelAdmin):  # Admin configuration for Clinic model
    list_display = ('id', 'name', 'region', 'specialty', 'telephone_no')
    search_fields = ('name', 'region')

@admin.register(Doctor)
class DoctorAdmin(admin.ModelAdmin):  # Admin configuration for Doctor model
    list_display = ('id', 'first_name', 'last_name', 'clinic')
    list_filter = ('clinic',)
    search_fields = ('first_name', 'last_name')

@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):  # Admin configuration for Patient model
    list_display = ('id', 'first_name', 'last_name', 'email', 'phone_number')
    search_fields = ('first_name', 'last_name', 'email')

@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):  # Admin configuration for Appointment model
    list_display = ('id', 'patient', 'clinic', 'doctor', 'date_time', 'status')
    list_filter = ('status', 'clinic')
    search_fields = ('patient__email', 'patient__last_name')
    date_hierarchy = 'date_time'
    ordering = ('-date_time',)
