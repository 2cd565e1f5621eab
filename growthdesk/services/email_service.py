import asyncio
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional, Protocol

from growthdesk.core.exceptions import EmailDeliveryError

logger = logging.getLogger(__name__)


class EmailDeliveryBackend(Protocol):
    """Anything that can deliver one email and return a delivery id."""

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        from_name: Optional[str] = None,
        from_email: Optional[str] = None,
    ) -> str:
        ...


class SmtpEmailBackend:
    """Delivers email over SMTP with STARTTLS."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Growthdesk",
        timeout: int = 10,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    def build_message(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        from_name: Optional[str] = None,
        from_email: Optional[str] = None,
    ) -> MIMEMultipart:
        sender = from_email or self.from_email
        domain = sender.split("@", 1)[1] if "@" in sender else None

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{from_name or self.from_name} <{sender}>"
        msg['To'] = recipient
        msg['Message-ID'] = make_msgid(domain=domain)

        # Plain text first so clients prefer the HTML part
        if text_body:
            msg.attach(MIMEText(text_body, 'plain'))
        msg.attach(MIMEText(html_body, 'html'))
        return msg

    def send_sync(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        from_name: Optional[str] = None,
        from_email: Optional[str] = None,
    ) -> str:
        """
        Send an email using SMTP.

        Returns:
            The Message-ID of the delivered email

        Raises:
            EmailDeliveryError: If SMTP is not configured or delivery fails
        """
        if not self.smtp_user or not self.smtp_password:
            logger.warning("Email not configured. SMTP credentials missing.")
            raise EmailDeliveryError("SMTP credentials missing")

        msg = self.build_message(recipient, subject, html_body, text_body, from_name, from_email)

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(from_email or self.from_email, recipient, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("SMTP Authentication failed. Check email credentials.")
            raise EmailDeliveryError("SMTP authentication failed") from e
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            raise EmailDeliveryError(f"SMTP error: {e}") from e
        except OSError as e:
            # TimeoutError is an OSError
            logger.error(f"Network error sending email: {e}")
            raise EmailDeliveryError(f"Network error: {e}") from e

        logger.info(f"Email sent successfully to {recipient}")
        return msg['Message-ID']

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        from_name: Optional[str] = None,
        from_email: Optional[str] = None,
    ) -> str:
        # smtplib blocks, keep it off the event loop
        return await asyncio.to_thread(
            self.send_sync, recipient, subject, html_body, text_body, from_name, from_email
        )


def get_email_backend() -> SmtpEmailBackend:
    """Get configured SMTP backend instance."""
    from growthdesk.config import settings

    return SmtpEmailBackend(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
        timeout=settings.SMTP_TIMEOUT_SECONDS,
    )


# ============================================================
# MERGE TAGS
# ============================================================

_MERGE_TAG = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")


def contact_merge_fields(contact) -> dict:
    return {
        "first_name": contact.first_name or "",
        "last_name": contact.last_name or "",
        "full_name": contact.full_name,
        "email": contact.email,
    }


def render_merge_tags(template: Optional[str], fields: dict) -> Optional[str]:
    """
    Replace ``{{ name }}`` placeholders with values from ``fields``.

    Unknown tags are left in place so a typo stays visible in the sent email.
    """
    if template is None:
        return None

    def replace(match):
        key = match.group(1)
        if key in fields:
            return str(fields[key])
        return match.group(0)

    return _MERGE_TAG.sub(replace, template)
