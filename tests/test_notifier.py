"""
tests/test_notifier.py -- Unit tests for auth/notifier.py.

SMTP is replaced by a fake class patched over smtplib.SMTP; nothing leaves
the process.
"""

from __future__ import annotations

import email
import logging

import pytest

from auth import notifier as notifier_module
from auth.models import User
from auth.notifier import SmtpNotifier, redact_email

TOKEN = "a" * 64


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port, self.timeout = host, port, timeout
        self.started_tls = False
        self.logged_in = None
        self.sent: list[tuple[str, str, str]] = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture
def user() -> User:
    return User(email="alice@example.com", password_hash="x", first_name="Alice", last_name="Liddell")


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.mark.parametrize(
    ("email", "expected"),
    [
        ("alice@example.com", "al***@example.com"),
        ("a@example.com", "a***@example.com"),
        ("no-at-sign", "redacted"),
    ],
)
def test_redact_email(email: str, expected: str) -> None:
    assert redact_email(email) == expected


@pytest.mark.asyncio
async def test_dev_mode_logs_without_address_or_token(user, fake_smtp, caplog) -> None:
    notifier = SmtpNotifier()
    assert not notifier.is_configured
    with caplog.at_level(logging.INFO, logger="warden.notify"):
        await notifier.send_password_reset(user, TOKEN)
    assert fake_smtp.instances == []
    assert "al***@example.com" in caplog.text
    assert "alice@example.com" not in caplog.text
    assert TOKEN not in caplog.text


@pytest.mark.asyncio
async def test_verification_email_sent_over_starttls(user, fake_smtp) -> None:
    notifier = SmtpNotifier(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="hunter2",
        from_email="noreply@example.com",
        frontend_url="https://app.example.com/",
    )
    await notifier.send_verification(user, TOKEN)

    (server,) = fake_smtp.instances
    assert server.host == "smtp.example.com"
    assert server.started_tls
    assert server.logged_in == ("mailer", "hunter2")
    (from_addr, to_addr, message) = server.sent[0]
    assert from_addr == "noreply@example.com"
    assert to_addr == "alice@example.com"
    assert f"https://app.example.com/verify-email?token={TOKEN}" in message


@pytest.mark.asyncio
async def test_reset_email_links_to_reset_page(user, fake_smtp) -> None:
    notifier = SmtpNotifier(smtp_host="smtp.example.com", from_email="noreply@example.com")
    await notifier.send_password_reset(user, TOKEN)
    (server,) = fake_smtp.instances
    assert server.logged_in is None
    assert f"/reset-password?token={TOKEN}" in server.sent[0][2]


@pytest.mark.asyncio
async def test_smtp_errors_propagate(user, monkeypatch) -> None:
    class RefusingSMTP(FakeSMTP):
        def __init__(self, *args, **kwargs):
            raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(notifier_module.smtplib, "SMTP", RefusingSMTP)
    notifier = SmtpNotifier(smtp_host="smtp.example.com", from_email="noreply@example.com")
    with pytest.raises(OSError):
        await notifier.send_verification(user, TOKEN)


def _html_part(message: str) -> str:
    parsed = email.message_from_string(message)
    (part,) = [p for p in parsed.walk() if p.get_content_type() == "text/html"]
    return part.get_payload(decode=True).decode(part.get_content_charset() or "utf-8")


@pytest.mark.asyncio
@pytest.mark.parametrize("send", ["send_verification", "send_password_reset"])
async def test_first_name_is_escaped_in_html_body(send, fake_smtp) -> None:
    hostile = User(
        email="mallory@example.com",
        password_hash="x",
        first_name='<a href="https://evil.example">click</a>',
        last_name="Hacker",
    )
    notifier = SmtpNotifier(smtp_host="smtp.example.com", from_email="noreply@example.com")
    await getattr(notifier, send)(hostile, TOKEN)

    body = _html_part(fake_smtp.instances[0].sent[0][2])
    assert '<a href="https://evil.example">' not in body
    assert "&lt;a href=&quot;https://evil.example&quot;&gt;click&lt;/a&gt;" in body
    # The link the service generates is still real markup.
    assert f'token={TOKEN}">' in body
