from rest_framework import serializers

from .models import QueueEntry


class QueueEntrySerializer(serializers.ModelSerializer):  # Serializer for QueueEntry data
    queue_id = serializers.IntegerField(source="id", read_only=True)
    clinic_id = serializers.IntegerField(read_only=True)
    appointment_id = serializers.IntegerField(read_only=True)

    class Meta:  # Meta class implementation
        model = QueueEntry
        fields = ["queue_id", "clinic_id", "appointment_id", "status", "priority", "created_at", "called_at"]


class CheckInSerializer(serializers.Serializer):  # Request body for patient check-in
    appointment_id = serializers.IntegerField()
    priority = serializers.IntegerField()


class StatusUpdateSerializer(serializers.Serializer):  # Request body for a queue status change
    status = serializers.CharField()


class RequeueSerializer(serializers.Serializer):  # Request body for requeueing a missed patient
    priority = serializers.IntegerField()


class SummaryQuerySerializer(serializers.Serializer):
    date = serializers.DateField()


class QueuePositionSerializer(serializers.Serializer):  # Response shape of a position query
    appointment_id = serializers.IntegerField()
    position = serializers.IntegerField()
    status = serializers.CharField()
    priority = serializers.IntegerField()
    total_in_queue = serializers.IntegerField()
    estimated_wait_time_minutes = serializers.IntegerField()
    message = serializers.CharField()
    is_queued = serializers.BooleanField()
