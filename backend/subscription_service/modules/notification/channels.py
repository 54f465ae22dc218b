"""Notification delivery channels."""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from subscription_service.core.config import settings


class NotificationChannelError(Exception):
    """A channel could not deliver a message."""


class NotificationChannel(ABC):
    """Base class for delivery channels."""

    channel_name: str = ""

    @abstractmethod
    async def deliver(self, recipient: str, subject: str, text: str, html: str) -> None:
        """Deliver one message. Raises on failure."""


class EmailChannel(NotificationChannel):
    """Email channel using SMTP."""

    channel_name = "email"

    async def deliver(self, recipient: str, subject: str, text: str, html: str) -> None:
        if not settings.SMTP_HOST or not settings.SMTP_FROM_EMAIL:
            raise NotificationChannelError("SMTP not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = settings.SMTP_FROM_EMAIL
        msg["To"] = recipient
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        # smtplib blocks; keep it off the event loop
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send_smtp, recipient, msg)

    def _send_smtp(self, recipient: str, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as server:
            if settings.SMTP_TLS:
                server.starttls()
            if settings.SMTP_USER and settings.SMTP_PASSWORD:
                server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.sendmail(settings.SMTP_FROM_EMAIL, recipient, msg.as_string())
