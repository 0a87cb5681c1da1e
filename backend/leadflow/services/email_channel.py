from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Optional

from leadflow.core.config import get_settings
from leadflow.services.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_tls: bool
    from_email: str


def smtp_config_from_settings() -> SmtpConfig:
    settings = get_settings()
    if not settings.smtp_host:
        raise ConfigurationError("SMTP_HOST is not configured")
    return SmtpConfig(
        host=settings.smtp_host,
        port=int(settings.smtp_port),
        user=settings.smtp_user or None,
        password=settings.smtp_password or None,
        use_tls=bool(settings.smtp_use_tls),
        from_email=settings.smtp_from_email,
    )


def send_email_via_smtp(
    *,
    smtp: SmtpConfig,
    to_email: str,
    subject: str,
    body_text: str,
    body_html: Optional[str] = None,
) -> None:
    msg = EmailMessage()
    msg["From"] = smtp.from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body_text)
    if body_html:
        msg.add_alternative(body_html, subtype="html")

    context = ssl.create_default_context()

    # Port 465 uses implicit SSL (SMTP_SSL), anything else STARTTLS when enabled
    if smtp.port == 465:
        server = smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=20, context=context)
    else:
        server = smtplib.SMTP(smtp.host, smtp.port, timeout=20)
        if smtp.use_tls:
            server.starttls(context=context)
    try:
        if smtp.user and smtp.password:
            server.login(smtp.user, smtp.password)
        server.send_message(msg)
    finally:
        try:
            server.quit()
        except smtplib.SMTPException:
            logger.debug("SMTP quit failed for %s", smtp.host)


async def deliver_email(payload: dict[str, Any]) -> None:
    """Send one rendered payload (to/subject/body_text/body_html).

    Raises on any delivery problem; the caller owns retries.
    """
    settings = get_settings()
    if not settings.enable_email:
        raise ConfigurationError("Email delivery is disabled (ENABLE_EMAIL=false)")
    smtp = smtp_config_from_settings()
    await asyncio.to_thread(
        send_email_via_smtp,
        smtp=smtp,
        to_email=payload["to"],
        subject=payload["subject"],
        body_text=payload["body_text"],
        body_html=payload.get("body_html"),
    )
