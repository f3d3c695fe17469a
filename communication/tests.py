from smtplib import SMTPException
from unittest import mock

from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.core import mail
from django.test import SimpleTestCase, override_settings

from .exceptions import NotificationDeliveryError
from .notification_service import EmailNotificationDispatcher, NotificationContext
from .routing import websocket_urlpatterns


def make_context(**overrides):
    data = dict(
        to_email="ama.mensah@example.com",
        patient_name="Ama Mensah",
        clinic_name="Ridge Clinic",
        doctor_name="Kofi Boateng",
        appointment_datetime="14/03/2025 09:30",
        queue_number=7,
        appointment_number=42,
    )
    data.update(overrides)
    return NotificationContext(**data)


@override_settings(
    EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend",
    NO_REPLY_EMAIL="no-reply@clinic.test",
    QUEUE_EMAIL_SUBJECT="Appointment & Queue Update",
)
class EmailNotificationDispatcherTest(SimpleTestCase):  # EmailNotificationDispatcherTest class implementation
    def setUp(self):  # Setup
        self.dispatcher = EmailNotificationDispatcher()

    def test_three_away_email(self):  # Test three away email
        self.dispatcher.send_three_away(make_context())

        self.assertEqual(len(mail.outbox), 1)
        message = mail.outbox[0]
        self.assertEqual(message.to, ["ama.mensah@example.com"])
        self.assertEqual(message.from_email, "no-reply@clinic.test")
        self.assertEqual(message.subject, "Appointment & Queue Update")
        self.assertIn("3 patients away", message.body)
        self.assertIn("Ama Mensah", message.body)
        html, mimetype = message.alternatives[0]
        self.assertEqual(mimetype, "text/html")
        self.assertIn("Ridge Clinic", html)

    def test_your_turn_mentions_room_when_known(self):  # Test your turn mentions room when known
        self.dispatcher.send_your_turn(make_context(room_number="12B"))

        self.assertIn("Room", mail.outbox[0].body)
        self.assertIn("12B", mail.outbox[0].body)

    def test_your_turn_without_room(self):  # Test your turn without room
        self.dispatcher.send_your_turn(make_context())

        self.assertIn("Kindly proceed to the consultation venue", mail.outbox[0].body)

    def test_confirmation_email(self):  # Test confirmation email
        self.dispatcher.send_confirmation(make_context(queue_number=0))

        body = mail.outbox[0].body
        self.assertIn("Appointment Confirmed", body)
        self.assertNotIn("Queue Number", body)

    def test_missing_recipient_raises_delivery_error(self):  # Test missing recipient raises delivery error
        with self.assertRaises(NotificationDeliveryError):
            self.dispatcher.send_three_away(make_context(to_email=None))
        self.assertEqual(mail.outbox, [])

    def test_transport_failure_raises_delivery_error(self):  # Test transport failure raises delivery error
        with mock.patch(
            "communication.email_service.EmailMultiAlternatives.send",
            side_effect=SMTPException("connection refused"),
        ):
            with self.assertRaises(NotificationDeliveryError) as raised:
                self.dispatcher.send_your_turn(make_context())

        self.assertEqual(raised.exception.recipient, "ama.mensah@example.com")
        self.assertEqual(raised.exception.error_kind, "dependency_failure")


@override_settings(CHANNEL_LAYERS={"default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}})
class QueuePositionConsumerTest(SimpleTestCase):  # QueuePositionConsumerTest class implementation
    databases = {"default"}  # consumers use database_sync_to_async, which closes stale DB connections

    def setUp(self):  # Setup
        self.hub = mock.Mock()
        self.hub.open_channel.side_effect = self.push_initial_position
        patcher = mock.patch("communication.consumers.get_live_update_hub", return_value=self.hub)
        patcher.start()
        self.addCleanup(patcher.stop)

    @staticmethod
    def push_initial_position(appointment_id, channel):
        channel.send({"appointment_id": appointment_id, "position": 2, "is_queued": True})
        return channel

    async def test_connect_pushes_position_and_disconnect_releases_channel(self):  # Test connect and disconnect
        communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), "/ws/queue/position/5/")
        connected, _ = await communicator.connect()
        self.assertTrue(connected)

        payload = await communicator.receive_json_from()
        self.assertEqual(payload, {"appointment_id": 5, "position": 2, "is_queued": True})

        await communicator.disconnect()

        appointment_id, channel = self.hub.open_channel.call_args[0]
        self.assertEqual(appointment_id, 5)
        self.hub.close_channel.assert_called_once_with(5, channel)
        self.assertTrue(channel.closed)

    async def test_hub_close_ends_the_socket(self):  # Test hub close ends the socket
        self.hub.open_channel.side_effect = lambda appointment_id, channel: channel.close()
        communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), "/ws/queue/position/9/")
        connected, _ = await communicator.connect()
        self.assertTrue(connected)

        output = await communicator.receive_output()
        self.assertEqual(output["type"], "websocket.close")
        await communicator.disconnect()
