import json
import logging

from asgiref.sync import async_to_sync
from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer

from queue_management.live_updates import ChannelClosed, PushChannel, get_live_update_hub

logger = logging.getLogger(__name__)


class ConsumerChannel(PushChannel):  # Delivers hub pushes to one WebSocket consumer through the channel layer
    def __init__(self, channel_layer, channel_name):
        self.channel_layer = channel_layer
        self.channel_name = channel_name
        self.closed = False

    def send(self, payload):
        if self.closed:
            raise ChannelClosed()
        async_to_sync(self.channel_layer.send)(
            self.channel_name, {"type": "queue.update", "payload": payload}
        )

    def close(self):
        if self.closed:
            return
        self.closed = True
        async_to_sync(self.channel_layer.send)(self.channel_name, {"type": "queue.close"})


class QueuePositionConsumer(AsyncWebsocketConsumer):  # Streams queue position updates for one appointment
    async def connect(self):  # Connect
        self.appointment_id = int(self.scope["url_route"]["kwargs"]["appointment_id"])
        self.push_channel = ConsumerChannel(self.channel_layer, self.channel_name)

        await self.accept()
        await self.open_live_channel()

    async def disconnect(self, close_code):  # Disconnect
        push_channel = getattr(self, "push_channel", None)
        if push_channel is not None:
            push_channel.closed = True
            await self.release_live_channel()

    async def queue_update(self, event):  # Queue update
        await self.send(text_data=json.dumps(event["payload"]))

    async def queue_close(self, event):  # Queue close
        await self.close()

    @database_sync_to_async
    def open_live_channel(self):  # Open live channel
        get_live_update_hub().open_channel(self.appointment_id, self.push_channel)
        logger.debug(f"WebSocket position channel opened for appointment {self.appointment_id}")

    @database_sync_to_async
    def release_live_channel(self):  # Release live channel
        get_live_update_hub().close_channel(self.appointment_id, self.push_channel)
