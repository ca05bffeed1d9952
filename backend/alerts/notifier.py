"""
Escalation notifications.

The escalation engine only needs ``send(contact, subject, message)``; delivery is
SendGrid email when configured, otherwise a structured log line.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

from core.config import get_settings

logger = structlog.get_logger()


@dataclass
class Contact:
    role: str
    name: str | None = None
    phone: str | None = None
    email: str | None = None

    @property
    def address(self) -> str | None:
        """Preferred single contact string (phone first)."""
        return self.phone or self.email


@dataclass
class NotificationResult:
    sent: bool
    channel: str
    recipient: str | None = None
    error: str | None = None


class Notifier(ABC):
    @abstractmethod
    async def send(self, contact: Contact, subject: str, message: str) -> NotificationResult:
        """Deliver a message. Never raises for delivery failures."""
        ...


class LogNotifier(Notifier):
    """Records the notification in the structured log only."""

    async def send(self, contact: Contact, subject: str, message: str) -> NotificationResult:
        logger.info(
            "notify.logged",
            role=contact.role,
            name=contact.name,
            recipient=contact.address,
            subject=subject,
        )
        return NotificationResult(sent=True, channel="log", recipient=contact.address)


class EmailNotifier(Notifier):
    """Escalation email via SendGrid."""

    def __init__(self, api_key: str, from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    async def send(self, contact: Contact, subject: str, message: str) -> NotificationResult:
        if not contact.email:
            return NotificationResult(sent=False, channel="email", error="contact has no email address")

        html_content = f"""
        <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
          <div style="background: #7f1d1d; color: white; padding: 24px; border-radius: 12px 12px 0 0;">
            <h1 style="margin: 0; font-size: 20px;">Store Health Escalation</h1>
          </div>
          <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
            <p style="margin: 0 0 12px; font-weight: 600; color: #1e293b;">{subject}</p>
            <p style="color: #334155; line-height: 1.6; white-space: pre-line;">{message}</p>
            {'<p style="color: #64748b;"><strong>To:</strong> ' + contact.name + '</p>' if contact.name else ''}
          </div>
        </div>
        """

        try:
            sg = sendgrid.SendGridAPIClient(api_key=self.api_key)
            email = Mail(
                from_email=self.from_email,
                to_emails=contact.email,
                subject=subject,
                html_content=html_content,
            )
            response = sg.send(email)
        except Exception as exc:  # noqa: BLE001
            logger.warning("notify.email_failed", recipient=contact.email, error=str(exc))
            return NotificationResult(sent=False, channel="email", recipient=contact.email, error=str(exc))

        sent = response.status_code in (200, 201, 202)
        return NotificationResult(
            sent=sent,
            channel="email",
            recipient=contact.email,
            error=None if sent else f"sendgrid status {response.status_code}",
        )


def build_notifier() -> Notifier:
    settings = get_settings()
    if settings.notifications_enabled and settings.sendgrid_api_key:
        return EmailNotifier(settings.sendgrid_api_key, settings.alert_from_email)
    return LogNotifier()
