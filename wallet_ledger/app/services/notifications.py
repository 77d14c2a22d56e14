"""
Outbound email.

Delivery is scheduled on FastAPI background tasks so a slow or failing mail
server never delays or undoes a money movement; failures are only logged.
"""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol

from fastapi import BackgroundTasks

from ..core.config import Settings

logger = logging.getLogger(__name__)


class MailTransport(Protocol):
    def send(self, email: str, subject: str, body: str) -> bool: ...


class SmtpTransport:
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.username = settings.smtp_username
        self.password = settings.smtp_password
        self.sender = settings.smtp_sender
        self.use_ssl = settings.smtp_use_ssl
        self.timeout = settings.payment_timeout_seconds

    def send(self, email: str, subject: str, body: str) -> bool:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = email
        message["Subject"] = subject
        message.set_content(body)

        smtp_cls = smtplib.SMTP_SSL if self.use_ssl else smtplib.SMTP
        try:
            with smtp_cls(self.host, self.port, timeout=self.timeout) as server:
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "notification.failed",
                extra={"to": email, "subject": subject, "error": type(exc).__name__},
            )
            return False
        return True


class LogTransport:
    """Used when no SMTP server is configured (development, tests)."""

    def send(self, email: str, subject: str, body: str) -> bool:
        logger.info("notification.skipped", extra={"to": email, "subject": subject})
        return True


def build_mail_transport(settings: Settings) -> MailTransport:
    if settings.smtp_host:
        return SmtpTransport(settings)
    return LogTransport()


class BackgroundNotifier:
    def __init__(
        self,
        transport: MailTransport,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> None:
        self.transport = transport
        self.background_tasks = background_tasks

    def _deliver(self, email: str, subject: str, body: str) -> bool:
        try:
            return self.transport.send(email, subject, body)
        except Exception:
            logger.exception("notification.error", extra={"to": email, "subject": subject})
            return False

    def send(self, email: Optional[str], subject: str, body: str) -> bool:
        if not email:
            return False
        if self.background_tasks is None:
            return self._deliver(email, subject, body)
        self.background_tasks.add_task(self._deliver, email, subject, body)
        return True
