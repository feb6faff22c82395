from __future__ import annotations

import re
import smtplib
from email.message import EmailMessage

from flask import current_app

from .logging import REDACTED, get_logger

log = get_logger(__name__)

TEMPLATES = {
    "emailVerification": (
        "Verify Your Email",
        "Hello {name},\n\n"
        "Please verify your email address by opening the link below:\n{verificationUrl}\n\n"
        "The link expires in 24 hours.",
    ),
    "passwordReset": (
        "Password Reset Request",
        "Hello {name},\n\n"
        "Use the link below to choose a new password:\n{resetUrl}\n\n"
        "The link expires in 10 minutes. If you did not ask for a reset, ignore this email.",
    ),
    "otpCode": (
        "Your OTP Code",
        "Hello {name},\n\nYour one-time code is: {otp}\n"
        "It expires in 5 minutes. Do not share it with anyone.",
    ),
}

_SECRET_FIELDS = ("otp",)
_LINK_TOKEN_RE = re.compile(r"(token=)[^&\s]+")


def render(template: str, data: dict) -> tuple[str, str]:
    try:
        subject, body = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"unknown notification template: {template}") from None
    return subject, body.format(**data)


def mask_secrets(data: dict) -> dict:
    masked = {}
    for key, value in data.items():
        if key in _SECRET_FIELDS:
            masked[key] = REDACTED
        elif isinstance(value, str):
            masked[key] = _LINK_TOKEN_RE.sub(rf"\g<1>{REDACTED}", value)
        else:
            masked[key] = value
    return masked


class NotificationSender:
    def send_notification(self, to: str, template: str, data: dict) -> None:
        raise NotImplementedError


class ConsoleNotificationSender(NotificationSender):
    """Prints notifications to stdout; secrets are masked unless ``reveal_secrets``."""

    def __init__(self, reveal_secrets: bool = False) -> None:
        self.reveal_secrets = reveal_secrets

    def send_notification(self, to: str, template: str, data: dict) -> None:
        if not self.reveal_secrets:
            data = mask_secrets(data)
        subject, body = render(template, data)
        print(f"[Email:{template}] To={to} Subject={subject}\n{body}")


class InMemoryNotificationSender(NotificationSender):
    def __init__(self, outbox: list[dict]) -> None:
        self._outbox = outbox

    def send_notification(self, to: str, template: str, data: dict) -> None:
        render(template, data)
        self._outbox.append(
            {
                "to": to,
                "template": template,
                "data": dict(data),
            }
        )


class SmtpNotificationSender(NotificationSender):
    def __init__(self, host: str, port: int, username: str, password: str, from_addr: str) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from = from_addr

    def send_notification(self, to: str, template: str, data: dict) -> None:
        subject, body = render(template, data)
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._from
        msg["To"] = to
        msg.set_content(body)

        with smtplib.SMTP(self._host, self._port) as server:
            server.starttls()
            if self._username:
                server.login(self._username, self._password)
            server.send_message(msg)
        log.info("notification_sent", template=template, backend="smtp")


def get_notification_sender() -> NotificationSender:
    backend = current_app.config.get("EMAIL_BACKEND", "console")
    if backend == "memory":
        outbox = current_app.extensions.setdefault("email_outbox", [])
        return InMemoryNotificationSender(outbox)
    if backend == "smtp":
        host = current_app.config.get("SMTP_HOST", "")
        port = int(current_app.config.get("SMTP_PORT", 587))
        username = current_app.config.get("SMTP_USERNAME", "")
        password = current_app.config.get("SMTP_PASSWORD", "")
        from_addr = current_app.config.get("SMTP_FROM") or username

        if not host or not username or not password:
            raise RuntimeError("SMTP configuration missing. Set SMTP_HOST/SMTP_USERNAME/SMTP_PASSWORD.")

        return SmtpNotificationSender(host, port, username, password, from_addr)
    return ConsoleNotificationSender(
        reveal_secrets=current_app.config.get("EMAIL_CONSOLE_REVEAL_SECRETS", False)
    )
