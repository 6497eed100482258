import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from enum import Enum
from typing import Any, Dict, Optional, TYPE_CHECKING
import logging

from simshop.config import settings

if TYPE_CHECKING:
    from simshop.services.settings_service import SettingsService

logger = logging.getLogger(__name__)


class DeliveryResult(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationTemplate(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    ESIM_READY = "esim_ready"
    RECEIPT = "receipt"
    REFUND = "refund"


# (subject, html body). Bodies use str.format with the variables passed to send().
TEMPLATES: Dict[str, tuple[str, str]] = {
    NotificationTemplate.ORDER_CONFIRMATION.value: (
        "Order confirmed - {order_ref}",
        """
        <h2>Thanks for your order</h2>
        <p>We received your payment of <strong>{amount}</strong> for <strong>{plan_name}</strong>.</p>
        <p>Your SIM profile is being prepared. We'll email you as soon as it's ready to install.</p>
        <p><a href="{order_url}">View your order</a></p>
        """,
    ),
    NotificationTemplate.ESIM_READY.value: (
        "Your eSIM is ready - {order_ref}",
        """
        <h2>Your eSIM is ready</h2>
        <p>Plan: <strong>{plan_name}</strong></p>
        <p>ICCID: {iccid}</p>
        <p><img src="{qr_code_url}" alt="Install QR code" width="240"></p>
        <p>Manual activation code: <code>{activation_code}</code></p>
        <p><a href="{receipt_url}">Download your receipt</a></p>
        """,
    ),
    NotificationTemplate.RECEIPT.value: (
        "Receipt for order {order_ref}",
        """
        <h2>Receipt</h2>
        <p>Plan: <strong>{plan_name}</strong></p>
        <p>Amount paid: <strong>{amount}</strong></p>
        <p><a href="{receipt_url}">Download PDF receipt</a></p>
        """,
    ),
    NotificationTemplate.REFUND.value: (
        "Refund issued - {order_ref}",
        """
        <h2>Your refund is on its way</h2>
        <p>We refunded <strong>{amount}</strong> to your {refund_method}.</p>
        <p>Card refunds can take 5-10 business days to appear.</p>
        """,
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render_template(template: str, variables: Dict[str, Any]) -> tuple[str, str]:
    if template not in TEMPLATES:
        raise ValueError(f"Unknown notification template: {template}")
    subject, body = TEMPLATES[template]
    values = _SafeDict(variables)
    return subject.format_map(values), body.format_map(values)


def is_deliverable(recipient: Optional[str]) -> bool:
    """Placeholder guest addresses never receive mail."""
    if not recipient or "@" not in recipient:
        return False
    return not recipient.lower().endswith(f"@{settings.GUEST_EMAIL_DOMAIN}")


class NotificationDispatcher(ABC):
    """Sends one transactional message and reports the outcome."""

    @abstractmethod
    async def send(self, template: str, recipient: str, variables: Dict[str, Any]) -> DeliveryResult:
        pass


class EmailService(NotificationDispatcher):
    """Email service for sending transactional emails via SMTP."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "SIM Profile Storefront",
        settings_service: Optional["SettingsService"] = None,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.settings_service = settings_service

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send an email over SMTP with STARTTLS. Blocking.

        Returns:
            True if the server accepted the message, False otherwise
        """
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = to_email
        if text_content:
            msg.attach(MIMEText(text_content, 'plain'))
        msg.attach(MIMEText(html_content, 'html'))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError:
            logger.error("[EMAIL] SMTP authentication failed. Check email credentials.")
            return False
        except smtplib.SMTPException as e:
            logger.error(f"[EMAIL] SMTP error: {e}")
            return False
        except OSError as e:
            logger.error(f"[EMAIL] Network error sending email: {e}")
            return False

        logger.info(f"[EMAIL] Sent '{subject}' to {to_email}")
        return True

    async def _enabled(self) -> bool:
        if self.settings_service is None:
            return True
        snapshot = await self.settings_service.get()
        return snapshot.email_enabled

    async def send(self, template: str, recipient: str, variables: Dict[str, Any]) -> DeliveryResult:
        subject, html = render_template(template, variables)

        if not await self._enabled():
            logger.info(f"[EMAIL] Email disabled, skipping {template} for {recipient}")
            return DeliveryResult.SKIPPED
        if not self.smtp_user or not self.smtp_password:
            logger.warning(f"[EMAIL] SMTP credentials missing, skipping {template}")
            return DeliveryResult.SKIPPED
        if not is_deliverable(recipient):
            logger.info(f"[EMAIL] No deliverable address for {template} ({recipient})")
            return DeliveryResult.SKIPPED

        sent = await asyncio.to_thread(self.send_email, recipient, subject, html)
        return DeliveryResult.DELIVERED if sent else DeliveryResult.FAILED


def get_email_service(settings_service: Optional["SettingsService"] = None) -> EmailService:
    """Get configured email service instance."""
    return EmailService(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
        settings_service=settings_service,
    )
