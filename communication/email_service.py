from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string
from django.utils.html import strip_tags
from django.conf import settings
import logging

from .exceptions import NotificationDeliveryError

logger = logging.getLogger(__name__)


class EmailService:  # Service class for Email operations
    @staticmethod
    def send_email(to_email, subject, template_name, context):
        """
        Render an HTML template and send it as a multipart email.

        Args:
            to_email: Recipient email address
            subject: Email subject
            template_name: Template to use for email body
            context: Context data for template

        Raises:
            NotificationDeliveryError: if rendering or the SMTP hand-off fails
        """
        if not to_email:
            raise NotificationDeliveryError("Recipient has no email address")

        try:
            html_content = render_to_string(template_name, context)

            email = EmailMultiAlternatives(
                subject=subject,
                body=strip_tags(html_content),
                from_email=settings.NO_REPLY_EMAIL,
                to=[to_email],
            )
            email.attach_alternative(html_content, "text/html")
            email.send(fail_silently=False)
        except Exception as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            raise NotificationDeliveryError(str(e), recipient=to_email) from e

        logger.info(f"Email sent to {to_email}: {subject}")


email_service = EmailService()
