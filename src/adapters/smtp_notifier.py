"""SMTP email notification adapter.

Builds a multipart (text + optional HTML) message and delivers it through a
plain SMTP relay.
"""

from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

from core.config import NotificationConfig


class SmtpEmailNotifier:
    """Notifier adapter that sends alert emails via SMTP."""

    def __init__(
        self,
        config: NotificationConfig,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        if not config.smtp_host:
            raise ValueError("notifications.smtp_host is required for smtp notifications")
        self._config = config
        self._username = username
        self._password = password

    def _build_message(self, to: str, subject: str, text: str, html: Optional[str]) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._config.from_address
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=self._config.from_address.rpartition("@")[2] or None)
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(
            self._config.smtp_host,
            self._config.smtp_port,
            timeout=self._config.timeout_seconds,
        ) as smtp:
            if self._config.use_tls:
                smtp.starttls()
            if self._username and self._password:
                smtp.login(self._username, self._password)
            refused = smtp.send_message(message)
        if refused:
            raise RuntimeError(f"SMTP refused recipients: {', '.join(sorted(refused))}")

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> str:
        """Send one email and return its Message-ID."""

        message = self._build_message(to, subject, text, html)
        # smtplib is blocking; run it off the event loop so the lease heartbeat
        # keeps ticking during slow deliveries.
        try:
            await asyncio.to_thread(self._deliver, message)
        except smtplib.SMTPException as e:
            raise RuntimeError(f"SMTP error: {e}") from e
        return message["Message-ID"]
