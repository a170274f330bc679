from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from projectclad_api.config import settings


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    def is_configured(self) -> bool: ...

    def send(self, to: str, subject: str, text: str) -> None: ...


class SmtpNotifier:
    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        secure: bool | None = None,
    ) -> None:
        self.host = (settings.smtp_host if host is None else host).strip()
        self.port = port or settings.smtp_port
        self.user = settings.smtp_user if user is None else user
        self.password = settings.smtp_password if password is None else password
        self.sender = sender or settings.smtp_from
        self.secure = settings.smtp_secure if secure is None else secure

    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def send(self, to: str, subject: str, text: str) -> None:
        if not self.is_configured():
            raise NotificationError("SMTP not configured")
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        try:
            if self.secure:
                with smtplib.SMTP_SSL(
                    self.host, self.port, context=ssl.create_default_context(), timeout=30
                ) as server:
                    server.login(self.user, self.password)
                    server.send_message(message)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                    server.starttls(context=ssl.create_default_context())
                    server.login(self.user, self.password)
                    server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Failed to send email to {to}: {exc}") from exc


_notifier = SmtpNotifier()


def get_notifier() -> Notifier:
    return _notifier
