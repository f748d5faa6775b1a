"""
auth/notifier.py -- Outbound notifications (verification and password-reset emails).

The service depends only on the Notifier protocol. SmtpNotifier is the
shipped implementation: smtplib over STARTTLS or implicit TLS, run in a worker
thread. When no SMTP host is configured it logs that an email would have been
sent (recipient redacted, no token) and returns -- enough for local
development without a mail server.

Delivery failures are the caller's business: the service logs them and
carries on, because a lost email must not block registration or leak whether
an address exists.
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol
from urllib.parse import quote

from auth.models import User

logger = logging.getLogger("warden.notify")


def redact_email(email: str) -> str:
    """Redact an address for logging: alice@example.com -> al***@example.com."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Notifier(Protocol):
    async def send_verification(self, user: User, token: str) -> None: ...

    async def send_password_reset(self, user: User, token: str) -> None: ...


class SmtpNotifier:
    """Sends transactional email via SMTP."""

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "Warden",
        frontend_url: str = "http://localhost:3000",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send_verification(self, user: User, token: str) -> None:
        url = f"{self.frontend_url}/verify-email?token={quote(token)}"
        text_body = (
            f"Hello {user.first_name},\n\n"
            "Thank you for registering. Verify your email address by opening this link:\n\n"
            f"{url}\n\n"
            "This link will expire in 24 hours. If you didn't create an account, ignore this email.\n"
        )
        html_body = (
            f"<p>Hello {html.escape(user.first_name)},</p>"
            "<p>Thank you for registering. Verify your email address by clicking the link below:</p>"
            f'<p><a href="{url}">Verify Email</a></p>'
            "<p>This link will expire in 24 hours.</p>"
        )
        await asyncio.to_thread(self._send, user.email, "Verify Your Email Address", html_body, text_body)

    async def send_password_reset(self, user: User, token: str) -> None:
        url = f"{self.frontend_url}/reset-password?token={quote(token)}"
        text_body = (
            f"Hello {user.first_name},\n\n"
            "You requested a password reset. Open this link to choose a new password:\n\n"
            f"{url}\n\n"
            "This link will expire in 1 hour. If you didn't request this, ignore this email.\n"
        )
        html_body = (
            f"<p>Hello {html.escape(user.first_name)},</p>"
            "<p>You requested a password reset. Click the link below to reset your password:</p>"
            f'<p><a href="{url}">Reset Password</a></p>'
            "<p>This link will expire in 1 hour.</p>"
        )
        await asyncio.to_thread(self._send, user.email, "Reset Your Password", html_body, text_body)

    def _send(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if not self.is_configured:
            logger.info("email (dev mode, not sent) to=%s subject=%r", redact_email(to_email), subject)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        logger.info("email sent to=%s subject=%r", redact_email(to_email), subject)
