"""
Queue Management URLs
Handles patient check-in, queue positions, patient calling and queue status
"""
from django.urls import path
from queue_management import views

app_name = 'queue_management'

urlpatterns = [
    # Patient check-in and position
    path('api/v1/queue/check-in/', views.CheckInView.as_view(), name='check_in'),
    path('api/v1/queue/position/<int:appointment_id>/', views.get_queue_position, name='queue_position'),
    path('api/v1/queue/position/<int:appointment_id>/stream/', views.queue_position_stream, name='queue_position_stream'),

    # Clinic queue
    path('api/v1/queue/clinic/<int:clinic_id>/', views.ClinicQueueView.as_view(), name='clinic_queue'),
    path('api/v1/queue/clinic/<int:clinic_id>/currently-serving/', views.get_currently_serving, name='currently_serving'),
    path('api/v1/queue/clinic/<int:clinic_id>/missed/', views.get_missed_patients, name='missed_patients'),
    path('api/v1/queue/clinic/<int:clinic_id>/summary/', views.get_completed_summary, name='completed_summary'),

    # Staff actions
    path('api/v1/queue/clinic/<int:clinic_id>/call-next/', views.call_next_patient, name='call_next_patient'),
    path('api/v1/queue/call/<int:appointment_id>/', views.call_patient, name='call_patient'),
    path('api/v1/queue/complete/<int:appointment_id>/', views.complete_appointment, name='complete_appointment'),
    path('api/v1/queue/<int:queue_id>/status/', views.QueueStatusView.as_view(), name='queue_status'),
    path('api/v1/queue/requeue/<int:appointment_id>/', views.RequeueView.as_view(), name='requeue'),

    # History and health
    path('api/v1/queue/appointment/<int:appointment_id>/history/', views.get_appointment_history, name='appointment_history'),
    path('api/v1/queue/health/', views.queue_health, name='queue_health'),
]
