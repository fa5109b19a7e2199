"""Plain-text email delivery over SMTP (aiosmtplib)."""

from __future__ import annotations

import logging
import ssl
from email.mime.text import MIMEText

import aiosmtplib

from record_alerts.config import settings
from record_alerts.core.errors import EmailDeliveryError

logger = logging.getLogger(__name__)


def build_message(to: str, subject: str, body: str) -> MIMEText:
    msg = MIMEText(body, "plain", "utf-8")
    msg["From"] = f"{settings.email_from_name} <{settings.email_from_address}>"
    msg["To"] = to
    msg["Subject"] = subject
    return msg


async def send_email(to: str, subject: str, body: str) -> None:
    """Send one message. Raises EmailDeliveryError on any transport failure."""
    if not settings.smtp_host:
        raise EmailDeliveryError("SMTP_HOST is not configured")
    msg = build_message(to, subject, body)
    try:
        await aiosmtplib.send(
            msg,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username or None,
            password=settings.smtp_password or None,
            start_tls=settings.smtp_use_tls,
            tls_context=ssl.create_default_context() if settings.smtp_use_tls else None,
        )
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error("Email to %s failed: %s", to, type(e).__name__)
        raise EmailDeliveryError(f"SMTP delivery failed: {type(e).__name__}") from e
    logger.info("Email sent to %s (%s)", to, subject)
