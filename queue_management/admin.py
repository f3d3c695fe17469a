from django.contrib import admin
from .models import QueueEntry

@admin.register(QueueEntry)
class QueueEntryAdmin(admin.ModelAdmin):  # Admin configuration for QueueEntry model
    list_display = ('id', 'clinic', 'appointment', 'status', 'priority', 'created_at', 'called_at')
    list_filter = ('status', 'priority', 'clinic')
    search_fields = ('appointment__id', 'appointment__patient__last_name')
    readonly_fields = ('created_at', 'called_at', 'three_away_notified_at')
    ordering = ('-created_at',)
