from django.urls import path

from . import consumers

websocket_urlpatterns = [
    path("ws/queue/position/<int:appointment_id>/", consumers.QueuePositionConsumer.as_asgi()),
]
