"""
In-process publish/subscribe for queue changes

The engine publishes a ClinicQueueChanged event after every committed mutation.
Subscribers are plain Django signal receivers: handler(sender, event, **kwargs).
"""
from dataclasses import dataclass, field
from datetime import datetime
import logging

from django.dispatch import Signal
from django.utils import timezone

logger = logging.getLogger(__name__)

clinic_queue_changed = Signal()


@dataclass(frozen=True)
class ClinicQueueChanged:
    clinic_id: int
    reason: str
    occurred_at: datetime = field(default_factory=timezone.now)


class EventBus:  # Thin publish/subscribe wrapper over a Django signal
    def __init__(self, signal=None):
        self.signal = signal or clinic_queue_changed

    def publish(self, event):
        """
        Deliver an event to every subscriber.

        A failing subscriber is logged and skipped; publish never raises.
        """
        responses = self.signal.send_robust(sender=self.__class__, event=event)
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    f"Queue event subscriber {getattr(receiver, '__qualname__', receiver)} failed "
                    f"for clinic {event.clinic_id}: {response}",
                    exc_info=(type(response), response, response.__traceback__),
                )
        return responses

    def subscribe(self, handler, dispatch_uid=None):
        self.signal.connect(handler, weak=False, dispatch_uid=dispatch_uid)

    def unsubscribe(self, handler, dispatch_uid=None):
        return self.signal.disconnect(handler, dispatch_uid=dispatch_uid)


_default_bus = None


def get_event_bus():
    global _default_bus
    if _default_bus is None:
        _default_bus = EventBus(clinic_queue_changed)
    return _default_bus
