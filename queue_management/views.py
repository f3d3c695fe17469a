"""
Queue Management API Views
Check-in, position queries and streams, staff calling workflow and queue reports.

Engine errors carry their own HTTP status; every view renders them as
{"error": <kind>, "message": <text>}.
"""
from django.http import StreamingHttpResponse
from django.views.decorators.http import require_GET
from drf_spectacular.utils import extend_schema, OpenApiResponse
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response
from rest_framework.views import APIView

from queue_management.conf import queue_setting
from queue_management.exceptions import QueueError
from queue_management.live_updates import StreamChannel, get_live_update_hub
from queue_management.serializers import (
    CheckInSerializer,
    QueueEntrySerializer,
    QueuePositionSerializer,
    RequeueSerializer,
    StatusUpdateSerializer,
    SummaryQuerySerializer,
)
from queue_management.services import get_queue_engine


def queue_error_response(exc):
    return Response({'error': exc.error_kind, 'message': exc.message}, status=exc.status_code)


@extend_schema(tags=['Queue'])
class CheckInView(APIView):
    """Check a patient's appointment into the clinic queue"""

    @extend_schema(request=CheckInSerializer, responses={201: QueueEntrySerializer})
    def post(self, request):  # Post
        serializer = CheckInSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            entry = get_queue_engine().check_in(
                serializer.validated_data['appointment_id'],
                serializer.validated_data['priority'],
            )
        except QueueError as e:
            return queue_error_response(e)

        return Response(QueueEntrySerializer(entry).data, status=status.HTTP_201_CREATED)


@extend_schema(tags=['Queue'])
class ClinicQueueView(APIView):
    """Ordered waiting line of a clinic"""

    @extend_schema(responses={200: OpenApiResponse(description="Ordered queue with positions")})
    def get(self, request, clinic_id):  # Get
        engine = get_queue_engine()
        minutes_per_patient = queue_setting('MINUTES_PER_PATIENT')
        queue = []
        for index, entry in enumerate(engine.get_active_queue(clinic_id)):
            row = QueueEntrySerializer(entry).data
            row['position'] = index + 1
            row['estimated_wait_time_minutes'] = index * minutes_per_patient
            queue.append(row)

        return Response({
            'clinic_id': clinic_id,
            'total_in_queue': len(queue),
            'queue': queue,
        })


@extend_schema(tags=['Queue'], responses={200: QueuePositionSerializer})
@api_view(['GET'])
def get_queue_position(request, appointment_id):
    """Current position of an appointment in its clinic queue"""
    try:
        position = get_queue_engine().get_position(appointment_id)
    except QueueError as e:
        return queue_error_response(e)
    return Response(position.as_dict())


@require_GET
def queue_position_stream(request, appointment_id):
    """
    Server-Sent Events stream re-emitting the position payload on every queue change.

    The body is an async iterator, so the stream needs the ASGI application.
    """
    hub = get_live_update_hub()
    channel = StreamChannel(on_release=lambda released: hub.close_channel(appointment_id, released))
    hub.open_channel(appointment_id, channel)

    response = StreamingHttpResponse(channel.stream(), content_type='text/event-stream')
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    return response


@extend_schema(tags=['Queue'])
class QueueStatusView(APIView):
    """Move a queue entry through the status state machine"""

    @extend_schema(request=StatusUpdateSerializer, responses={200: QueueEntrySerializer})
    def patch(self, request, queue_id):  # Patch
        serializer = StatusUpdateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            entry = get_queue_engine().update_status(queue_id, serializer.validated_data['status'])
        except QueueError as e:
            return queue_error_response(e)

        return Response(QueueEntrySerializer(entry).data)


@extend_schema(tags=['Queue'])
class RequeueView(APIView):
    """Put a missed patient back in the queue"""

    @extend_schema(request=RequeueSerializer, responses={200: QueueEntrySerializer})
    def post(self, request, appointment_id):  # Post
        serializer = RequeueSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            entry = get_queue_engine().requeue_missed(appointment_id, serializer.validated_data['priority'])
        except QueueError as e:
            return queue_error_response(e)

        return Response(QueueEntrySerializer(entry).data)


@extend_schema(tags=['Queue'], request=None, responses={200: QueueEntrySerializer})
@api_view(['POST'])
def call_next_patient(request, clinic_id):
    """Staff completes the current patient and calls the next one"""
    try:
        entry = get_queue_engine().call_next(clinic_id)
    except QueueError as e:
        return queue_error_response(e)
    return Response(QueueEntrySerializer(entry).data)


@extend_schema(tags=['Queue'], request=None, responses={200: QueueEntrySerializer})
@api_view(['POST'])
def call_patient(request, appointment_id):
    """Staff calls a specific waiting patient"""
    try:
        entry = get_queue_engine().call_by_appointment(appointment_id)
    except QueueError as e:
        return queue_error_response(e)
    return Response(QueueEntrySerializer(entry).data)


@extend_schema(tags=['Queue'], request=None, responses={200: QueueEntrySerializer})
@api_view(['POST'])
def complete_appointment(request, appointment_id):
    """Mark the patient being served for this appointment as done"""
    try:
        entry = get_queue_engine().mark_appointment_done(appointment_id)
    except QueueError as e:
        return queue_error_response(e)

    if entry is None:
        return Response(
            {'error': 'not_found', 'message': 'Appointment is not being served'},
            status=status.HTTP_404_NOT_FOUND
        )
    return Response(QueueEntrySerializer(entry).data)


@extend_schema(tags=['Queue'], responses={200: OpenApiResponse(description="Entry being served")})
@api_view(['GET'])
def get_currently_serving(request, clinic_id):
    entry = get_queue_engine().get_currently_serving(clinic_id)
    if entry is None:
        return Response({'clinic_id': clinic_id, 'status': 'QUEUE_EMPTY', 'current': None})
    return Response({
        'clinic_id': clinic_id,
        'status': 'SERVING',
        'current': QueueEntrySerializer(entry).data,
    })


@extend_schema(tags=['Queue'], responses={200: OpenApiResponse(description="Unresolved missed patients")})
@api_view(['GET'])
def get_missed_patients(request, clinic_id):
    missed = get_queue_engine().get_missed_entries(clinic_id)
    return Response({
        'clinic_id': clinic_id,
        'total_missed': len(missed),
        'missed_patients': QueueEntrySerializer(missed, many=True).data,
    })


@extend_schema(tags=['Queue'], parameters=[SummaryQuerySerializer], responses={200: OpenApiResponse(description="Daily completed summary")})
@api_view(['GET'])
def get_completed_summary(request, clinic_id):
    """Patients seen and average wait for a day"""
    query = SummaryQuerySerializer(data=request.query_params)
    if not query.is_valid():
        return Response(query.errors, status=status.HTTP_400_BAD_REQUEST)
    return Response(get_queue_engine().get_completed_summary(clinic_id, query.validated_data['date']))


@extend_schema(tags=['Queue'], responses={200: QueueEntrySerializer(many=True)})
@api_view(['GET'])
def get_appointment_history(request, appointment_id):
    history = get_queue_engine().get_appointment_history(appointment_id)
    return Response({
        'appointment_id': appointment_id,
        'is_in_queue': get_queue_engine().is_in_queue(appointment_id),
        'history': QueueEntrySerializer(history, many=True).data,
    })


@extend_schema(tags=['Queue'], responses={200: OpenApiResponse(description="Queue service health")})
@api_view(['GET'])
def queue_health(request):
    return Response({
        'status': 'UP',
        'service': 'queue',
        'live_channels': get_live_update_hub().active_channel_count(),
    })
