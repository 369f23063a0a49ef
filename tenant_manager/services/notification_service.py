"""
Notification Service

Fire-and-forget tenant notifications over SMTP. `send` never raises: a
disabled transport, an unknown event or a delivery failure all return False.
"""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from jinja2 import DictLoader, Environment, TemplateNotFound, select_autoescape

from tenant_manager.config import settings

logger = logging.getLogger(__name__)


class NotificationEvent:
    WELCOME = "welcome"
    TENANT_ACTIVATED = "tenant_activated"
    EXPIRATION_WARNING = "expiration_warning"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


SUBJECTS = {
    NotificationEvent.WELCOME: "Welcome to {app_name}",
    NotificationEvent.TENANT_ACTIVATED: "Your {app_name} account is ready",
    NotificationEvent.EXPIRATION_WARNING: "Your {app_name} subscription needs attention",
    NotificationEvent.SUBSCRIPTION_CANCELLED: "Your {app_name} subscription was cancelled",
}

TEMPLATES = {
    NotificationEvent.WELCOME: (
        "<p>Hello {{ full_name or username }},</p>"
        "<p>Your account <strong>{{ username }}</strong> has been created. "
        "We are preparing <a href=\"https://{{ subdomain }}\">{{ subdomain }}</a> for you.</p>"
    ),
    NotificationEvent.TENANT_ACTIVATED: (
        "<p>Hello {{ full_name or username }},</p>"
        "<p>Your workspace is live at <a href=\"https://{{ subdomain }}\">{{ subdomain }}</a>.</p>"
    ),
    NotificationEvent.EXPIRATION_WARNING: (
        "<p>Hello {{ full_name or username }},</p>"
        "<p>Your subscription is on hold. The following modules stay available until the end of "
        "their grace period:</p><ul>{% for m in modules %}<li>{{ m }}</li>{% endfor %}</ul>"
    ),
    NotificationEvent.SUBSCRIPTION_CANCELLED: (
        "<p>Hello {{ full_name or username }},</p>"
        "<p>Your subscription was cancelled and the related modules have been switched off.</p>"
    ),
}


class NotificationService:
    """Renders jinja2 templates and delivers them by email."""

    def __init__(self, enabled: bool | None = None):
        self.enabled = settings.email_enabled if enabled is None else enabled
        self.env = Environment(loader=DictLoader(TEMPLATES), autoescape=select_autoescape(["html", "xml"], default=True))

        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_from = settings.smtp_from

    async def send(self, event_type: str, recipient: str | None, template_data: dict) -> bool:
        if not recipient:
            logger.warning("Notification %s skipped: no recipient", event_type)
            return False
        if not self.enabled:
            logger.info("Email disabled; notification %s to %s not sent", event_type, recipient)
            return False

        try:
            html_body = self.env.get_template(event_type).render(app_name=settings.app_name, **template_data)
        except TemplateNotFound:
            logger.error("Unknown notification event: %s", event_type)
            return False

        subject = SUBJECTS[event_type].format(app_name=settings.app_name)
        return await asyncio.to_thread(self._send_email, recipient, subject, html_body)

    def _send_email(self, to_email: str, subject: str, html_body: str) -> bool:
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self.smtp_from
            msg["To"] = to_email
            msg.attach(MIMEText(html_body, "html"))

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls()
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)

            logger.info("Notification '%s' sent to %s", subject, to_email)
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to_email}: {e}")
            return False
