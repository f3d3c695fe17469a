"""
Queue notification dispatch

The queue engine talks to patients through the NotificationDispatcher contract:
- "three away" when a patient reaches the notification threshold position
- "your turn" when staff call the patient in
- appointment confirmation

Any delivery failure surfaces as NotificationDeliveryError; callers decide
whether it is fatal (the queue engine only logs it).
"""
from dataclasses import dataclass, asdict
from typing import Optional
import logging

from django.conf import settings

from .email_service import email_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationContext:
    """Display data for one patient-facing queue message"""

    to_email: Optional[str]
    patient_name: str
    clinic_name: str
    doctor_name: str
    appointment_datetime: str
    queue_number: int = 0
    appointment_number: Optional[int] = None
    room_number: Optional[str] = None

    def as_template_context(self) -> dict:
        return asdict(self)


class NotificationDispatcher:  # Contract consumed by the queue engine
    def send_three_away(self, context: NotificationContext) -> None:
        raise NotImplementedError

    def send_your_turn(self, context: NotificationContext) -> None:
        raise NotImplementedError

    def send_confirmation(self, context: NotificationContext) -> None:
        raise NotImplementedError


class EmailNotificationDispatcher(NotificationDispatcher):  # Sends queue notifications as HTML email
    THREE_AWAY_TEMPLATE = "emails/queue_three_away.html"
    YOUR_TURN_TEMPLATE = "emails/queue_your_turn.html"
    CONFIRMATION_TEMPLATE = "emails/appointment_confirmation.html"

    def __init__(self, transport=None, subject=None):
        self.transport = transport or email_service
        self.subject = subject or getattr(
            settings, "QUEUE_EMAIL_SUBJECT", "Appointment & Queue Update"
        )

    def send_three_away(self, context):
        self._send(context, self.THREE_AWAY_TEMPLATE)
        logger.info(f"Sent 'three away' notification to {context.to_email}")

    def send_your_turn(self, context):
        self._send(context, self.YOUR_TURN_TEMPLATE)
        logger.info(f"Sent 'your turn' notification to {context.to_email}")

    def send_confirmation(self, context):
        self._send(context, self.CONFIRMATION_TEMPLATE)
        logger.info(f"Sent appointment confirmation to {context.to_email}")

    def _send(self, context, template_name):
        self.transport.send_email(
            to_email=context.to_email,
            subject=self.subject,
            template_name=template_name,
            context=context.as_template_context(),
        )


_default_dispatcher = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _default_dispatcher
    if _default_dispatcher is None:
        _default_dispatcher = EmailNotificationDispatcher()
    return _default_dispatcher
