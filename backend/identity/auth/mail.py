"""Outbound account emails: verification links and password reset links.

Delivery is a side effect that runs after the owning transaction commits.
Callers treat every failure here as non-fatal; the mailers themselves raise
so the caller decides how to log.
"""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import urlencode

import anyio
import structlog
from anyio import to_thread

if TYPE_CHECKING:
    from identity.auth.settings import MailSettings

logger = structlog.get_logger()

VERIFY_EMAIL_SUBJECT = "Verify your Reelio account"
RESET_PASSWORD_SUBJECT = "Reset your Reelio password"


@runtime_checkable
class Mailer(Protocol):
    """Deliver account lifecycle emails."""

    async def send_verification_email(self, to: str, name: str | None, token: str) -> None: ...

    async def send_password_reset_email(self, to: str, name: str | None, token: str) -> None: ...


def build_link(app_url: str, path: str, token: str) -> str:
    """Join the app URL with a path and the token query parameter.

    ``reelio://`` + ``verify-email`` gives ``reelio://verify-email?token=...``.
    """
    base = app_url if app_url.endswith("/") else f"{app_url}/"
    return f"{base}{path}?{urlencode({'token': token})}"


def _verification_body(name: str | None, link: str) -> str:
    return (
        f"Hi {name or 'there'},\n\n"
        "Thanks for signing up. Confirm your email address by opening the link below.\n"
        "The link expires in 24 hours.\n\n"
        f"{link}\n\n"
        "If you did not create an account, you can ignore this email.\n"
    )


def _reset_body(name: str | None, link: str) -> str:
    return (
        f"Hi {name or 'there'},\n\n"
        "We received a request to reset your password. Open the link below to choose a new one.\n"
        "The link expires in 15 minutes.\n\n"
        f"{link}\n\n"
        "If you did not ask for a reset, no action is needed.\n"
    )


class SmtpMailer:
    """SMTP delivery. smtplib blocks, so each send runs off-thread with a deadline."""

    def __init__(self, settings: MailSettings) -> None:
        if not settings.host or not settings.from_address:
            raise ValueError("SMTP mail backend requires MAIL_HOST and MAIL_FROM_ADDRESS")
        self._settings = settings

    async def send_verification_email(self, to: str, name: str | None, token: str) -> None:
        link = build_link(self._settings.app_url, "verify-email", token)
        await self._send(to, VERIFY_EMAIL_SUBJECT, _verification_body(name, link))

    async def send_password_reset_email(self, to: str, name: str | None, token: str) -> None:
        link = build_link(self._settings.app_url, "reset-password", token)
        await self._send(to, RESET_PASSWORD_SUBJECT, _reset_body(name, link))

    async def _send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self._settings.from_address
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        with anyio.fail_after(self._settings.timeout_seconds):
            await to_thread.run_sync(lambda: self._deliver(message), abandon_on_cancel=True)
        logger.info("email sent", subject=subject)

    def _deliver(self, message: EmailMessage) -> None:
        s = self._settings
        with smtplib.SMTP(s.host, s.port, timeout=s.timeout_seconds) as smtp:
            if s.use_tls:
                smtp.starttls()
            if s.username and s.password:
                smtp.login(s.username, s.password.get_secret_value())
            smtp.send_message(message)


class ConsoleMailer:
    """Development backend: logs the recipient and a short token prefix instead of sending."""

    async def send_verification_email(self, to: str, name: str | None, token: str) -> None:  # noqa: ARG002
        logger.info("verification email (console backend)", to=to, token_prefix=token[:6])

    async def send_password_reset_email(self, to: str, name: str | None, token: str) -> None:  # noqa: ARG002
        logger.info("password reset email (console backend)", to=to, token_prefix=token[:6])


def get_mailer(settings: MailSettings) -> Mailer:
    """Return a Mailer for the configured backend ("console" or "smtp")."""
    if settings.backend == "smtp":
        return SmtpMailer(settings)
    if settings.backend == "console":
        return ConsoleMailer()
    raise ValueError(f"Unknown mail backend: {settings.backend!r}")
