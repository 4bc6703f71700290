"""
auth/notifications.py -- Outbound user notifications (verification, password reset).

The auth service only ever says "emit event E for user U with payload P".
What happens next belongs to a Notifier:

  LogNotifier    -- writes a redacted log line. Used when SMTP is not
                    configured (dev mode) and as the test double's base.
  EmailNotifier  -- renders a plain-text email per event and hands it to a
                    single background worker thread, so request handlers never
                    block on SMTP.

dispatch() is the only entry point services use. It swallows and logs every
notifier failure: a broken mail relay must never fail a registration or a
password reset request.

Layer rule: no imports from api/ or profiles/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from concurrent.futures import ThreadPoolExecutor
from email.message import EmailMessage
from enum import Enum
from typing import Any, Protocol

from auth.models import User
from core.config import Settings

logger = logging.getLogger("molunzaka.notifications")


class NotificationEvent(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class Notifier(Protocol):
    def notify(self, event: NotificationEvent, user: User, payload: dict[str, Any]) -> None: ...

    def close(self) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def dispatch(notifier: Notifier | None, event: NotificationEvent, user: User, payload: dict[str, Any]) -> None:
    """Fire-and-forget delivery. Never raises."""
    if notifier is None:
        return
    try:
        notifier.notify(event, user, payload)
    except Exception:
        logger.exception("Notification %s for %s failed", event.value, redact_email(user.email))


class LogNotifier:
    """Dev-mode notifier: logs the event instead of delivering it."""

    def notify(self, event: NotificationEvent, user: User, payload: dict[str, Any]) -> None:
        logger.info(
            "notification %s to=%s keys=%s",
            event.value,
            redact_email(user.email),
            sorted(payload),
        )

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Email delivery
# ---------------------------------------------------------------------------

_SUBJECTS = {
    NotificationEvent.EMAIL_VERIFICATION: "Verify your email address",
    NotificationEvent.PASSWORD_RESET: "Reset your password",
}


def render_body(event: NotificationEvent, user: User, payload: dict[str, Any]) -> str:
    if event is NotificationEvent.EMAIL_VERIFICATION:
        return (
            f"Hello {user.first_name},\n\n"
            "Please confirm your email address by opening the link below:\n\n"
            f"{payload['verification_url']}\n\n"
            "If you did not create an account, no further action is required.\n"
        )
    if event is NotificationEvent.PASSWORD_RESET:
        return (
            f"Hello {user.first_name},\n\n"
            "We received a request to reset your password. Open the link below to choose a new one:\n\n"
            f"{payload['reset_url']}\n\n"
            f"This link expires in {payload['expires_in_minutes']} minutes. "
            "If you did not request a reset, you can ignore this email.\n"
        )
    raise ValueError(f"Unknown notification event: {event!r}")


class EmailNotifier:
    """SMTP notifier with a background sender thread.

    notify() only renders and enqueues; the SMTP conversation happens on the
    worker. Delivery errors are logged on the worker and never reach the caller.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="molunzaka-mail")

    def notify(self, event: NotificationEvent, user: User, payload: dict[str, Any]) -> None:
        msg = EmailMessage()
        msg["Subject"] = _SUBJECTS[event]
        msg["From"] = self.settings.mail_from
        msg["To"] = user.email
        msg.set_content(render_body(event, user, payload))
        self._executor.submit(self._send, msg, event)

    def _send(self, msg: EmailMessage, event: NotificationEvent) -> None:
        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as smtp:
                if self.settings.smtp_use_tls:
                    smtp.starttls(context=ssl.create_default_context())
                if self.settings.smtp_user:
                    smtp.login(self.settings.smtp_user, self.settings.smtp_password)
                smtp.send_message(msg)
            logger.info("Sent %s email to %s", event.value, redact_email(str(msg["To"])))
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send %s email to %s: %s", event.value, redact_email(str(msg["To"])), e)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


def build_notifier(settings: Settings) -> Notifier:
    """EmailNotifier when SMTP is configured, LogNotifier otherwise."""
    if settings.smtp_host:
        return EmailNotifier(settings)
    logger.warning("SMTP_HOST not set -- notifications will be logged, not sent")
    return LogNotifier()
