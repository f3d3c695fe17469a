"""
Live queue position updates

LiveUpdateHub keeps one open push channel per tracked appointment and
re-pushes the appointment's position whenever its clinic's queue changes.
Channels are Server-Sent Events streams (StreamChannel) or WebSocket
consumers (communication.consumers.ConsumerChannel).

Broadcasts run on a small thread pool so that publishing a queue change
never waits on, or fails because of, a client connection. Deliveries to one
channel are serialized, so the last payload a client receives always
reflects the latest queue state.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import asyncio
import json
import logging
import queue
import threading

from django.db import close_old_connections

from .conf import queue_setting
from .exceptions import NotInQueue

logger = logging.getLogger(__name__)

NOT_IN_QUEUE_ERROR = "Not in queue"
NOT_IN_QUEUE_YET_MESSAGE = "Not in queue yet"


def not_in_queue_payload(appointment_id):
    """Terminal message: the appointment left the queue, the channel closes after it"""
    return {"appointment_id": appointment_id, "error": NOT_IN_QUEUE_ERROR, "is_queued": False}


def not_in_queue_yet_payload(appointment_id):
    return {"appointment_id": appointment_id, "is_queued": False, "message": NOT_IN_QUEUE_YET_MESSAGE}


class ChannelClosed(Exception):
    """Raised by a push channel whose client has gone away"""


class PushChannel:  # One client connection receiving position payloads
    def send(self, payload):
        raise NotImplementedError

    def close(self):
        pass


_CLOSE = object()


class StreamChannel(PushChannel):
    """
    Server-Sent Events channel.

    Payloads are buffered in a thread-safe queue and drained by stream(), an
    async generator the ASGI response iterates. send() may be called from
    any thread; it wakes the stream on its event loop. Closing the channel
    ends the stream; the stream ending (client disconnect) calls on_release.
    """

    def __init__(self, keepalive_seconds=None, on_release=None):
        self.keepalive_seconds = keepalive_seconds or queue_setting("STREAM_KEEPALIVE_SECONDS")
        self.on_release = on_release
        self._queue = queue.Queue()
        self._closed = threading.Event()
        self._loop = None
        self._wakeup = None

    @property
    def closed(self):
        return self._closed.is_set()

    def send(self, payload):
        if self.closed:
            raise ChannelClosed()
        self._put(payload)

    def close(self):
        if not self.closed:
            self._closed.set()
            self._put(_CLOSE)

    def _put(self, item):
        self._queue.put(item)
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # Event loop already closed; the stream is gone.
            pass

    async def _next_item(self):
        while True:
            self._wakeup.clear()
            try:
                return self._queue.get_nowait()
            except queue.Empty:
                pass
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.keepalive_seconds)
            except asyncio.TimeoutError:
                return None

    async def stream(self):
        self._wakeup = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        try:
            yield ": connected\n\n"
            while True:
                item = await self._next_item()
                if item is None:
                    yield ": keep-alive\n\n"
                    continue
                if item is _CLOSE:
                    break
                yield f"event: queue-update\ndata: {json.dumps(item)}\n\n"
        finally:
            self._closed.set()
            self._loop = None
            if self.on_release is not None:
                self.on_release(self)


@dataclass
class _Registration:
    channel: PushChannel
    clinic_id: object
    was_queued: bool = False
    delivery_lock: threading.Lock = field(default_factory=threading.Lock)


class LiveUpdateHub:
    """Registry of open position channels, fed by clinic-queue-changed events"""

    def __init__(self, engine=None, workers=None):
        self._engine = engine
        self._lock = threading.Lock()
        self._registrations = {}
        if workers is None:
            workers = queue_setting("LIVE_UPDATE_WORKERS")
        self._executor = (
            ThreadPoolExecutor(max_workers=workers, thread_name_prefix="queue-live-updates")
            if workers else None
        )

    @property
    def engine(self):
        if self._engine is None:
            from .services import get_queue_engine
            self._engine = get_queue_engine()
        return self._engine

    def open_channel(self, appointment_id, channel):
        """
        Track a channel for an appointment and push its current position.

        A channel already open for the same appointment is replaced and closed.
        """
        registration = _Registration(channel=channel, clinic_id=self.engine.clinic_id_for(appointment_id))
        with self._lock:
            previous = self._registrations.get(appointment_id)
            self._registrations[appointment_id] = registration

        if previous is not None and previous.channel is not channel:
            logger.debug(f"Replacing live update channel for appointment {appointment_id}")
            self._close_quietly(appointment_id, previous.channel)
        logger.debug(f"Opened live update channel for appointment {appointment_id}")

        with registration.delivery_lock:
            try:
                payload = self.engine.get_position(appointment_id).as_dict()
                registration.was_queued = True
            except NotInQueue:
                payload = not_in_queue_yet_payload(appointment_id)
            self._push(appointment_id, channel, payload)
        return channel

    def close_channel(self, appointment_id, channel=None):
        """
        Unregister and close the appointment's channel.

        When `channel` is given, nothing happens unless it is still the
        registered one, so a superseded connection cannot drop its successor.
        """
        with self._lock:
            registration = self._registrations.get(appointment_id)
            if registration is None or (channel is not None and registration.channel is not channel):
                return False
            del self._registrations[appointment_id]
        self._close_quietly(appointment_id, registration.channel)
        logger.debug(f"Closed live update channel for appointment {appointment_id}")
        return True

    def active_channel_count(self):
        with self._lock:
            return len(self._registrations)

    def handle_clinic_changed(self, sender, event, **kwargs):
        """Event subscriber: schedule a re-push for every channel tracking the clinic"""
        with self._lock:
            targets = [
                (appointment_id, registration)
                for appointment_id, registration in self._registrations.items()
                if registration.clinic_id == event.clinic_id
            ]
        if not targets:
            return
        if self._executor is None:
            self._broadcast(targets)
            return
        try:
            self._executor.submit(self._broadcast_in_worker, targets)
        except RuntimeError as e:
            logger.warning(f"Live update broadcast for clinic {event.clinic_id} not scheduled: {e}")

    def shutdown(self, wait=True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _broadcast_in_worker(self, targets):
        close_old_connections()
        try:
            self._broadcast(targets)
        finally:
            close_old_connections()

    def _broadcast(self, targets):
        for appointment_id, registration in targets:
            with registration.delivery_lock:
                self._deliver(appointment_id, registration)

    def _deliver(self, appointment_id, registration):
        """Compute and push one position; callers hold the registration's delivery lock"""
        try:
            payload = self.engine.get_position(appointment_id).as_dict()
        except NotInQueue:
            if registration.was_queued:
                self._push(appointment_id, registration.channel, not_in_queue_payload(appointment_id))
                self.close_channel(appointment_id, registration.channel)
            return
        except Exception:
            logger.exception(f"Could not compute queue position for appointment {appointment_id}")
            return
        registration.was_queued = True
        self._push(appointment_id, registration.channel, payload)

    def _push(self, appointment_id, channel, payload):
        try:
            channel.send(payload)
            return True
        except Exception as e:
            logger.warning(f"Dropping live update channel for appointment {appointment_id}: {e!r}")
            self.close_channel(appointment_id, channel)
            return False

    @staticmethod
    def _close_quietly(appointment_id, channel):
        try:
            channel.close()
        except Exception as e:
            logger.warning(f"Error closing live update channel for appointment {appointment_id}: {e!r}")


_default_hub = None
_hub_guard = threading.Lock()


def get_live_update_hub() -> LiveUpdateHub:
    global _default_hub
    with _hub_guard:
        if _default_hub is None:
            _default_hub = LiveUpdateHub()
        return _default_hub
