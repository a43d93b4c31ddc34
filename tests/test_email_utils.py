import aiosmtplib
import pytest

from starterkit.services import email_utils
from starterkit.services.email_utils import EmailError, EmailService, SendParams


def smtp_service(**kw):
    return EmailService(host="smtp.example.com", username="bot@example.com", password="pw", **kw)


def test_render_fills_template():
    subject, body = EmailService(app_name="Acme").render(
        "verification", {"Name": "Ann", "VerificationURL": "https://x/verify-email?token=t"}
    )
    assert subject == "Verify your email for Acme"
    assert "Hi Ann," in body
    assert "https://x/verify-email?token=t" in body


def test_render_announcement_link_is_optional():
    data = {"Title": "News", "Name": "Ann", "Message": "Hello", "Category": "product", "LinkURL": "", "LinkText": ""}
    _, body = EmailService().render("announcement", data)
    assert "Learn more" not in body
    _, body = EmailService().render("announcement", {**data, "LinkURL": "https://x/news"})
    assert "Learn more: https://x/news" in body


def test_render_errors():
    with pytest.raises(EmailError, match="unknown email template"):
        EmailService().render("nope", {})
    with pytest.raises(EmailError, match="failed to render"):
        EmailService().render("verification", {"Name": "missing url"})


def test_availability():
    assert EmailService().is_available() is False
    assert EmailService(dev_mode=True).is_available() is True
    assert smtp_service().is_available() is True
    assert smtp_service().from_addr == "bot@example.com"


def test_unavailable_service_is_a_noop(monkeypatch):
    async def fail(*args, **kwargs):
        raise AssertionError("should not send")

    monkeypatch.setattr(email_utils.aiosmtplib, "send", fail)
    EmailService().send_blocking(SendParams(to="a@b.com", template_name="password_reset", data={"Name": "A", "ResetURL": "u"}))
    EmailService(dev_mode=True, host="smtp.example.com", from_addr="x@y.z").send_blocking(
        SendParams(to="a@b.com", template_name="password_reset", data={"Name": "A", "ResetURL": "u"})
    )


def test_send_builds_message(monkeypatch):
    sent = []

    async def fake_send(msg, **kwargs):
        sent.append((msg, kwargs))

    monkeypatch.setattr(email_utils.aiosmtplib, "send", fake_send)
    smtp_service().send_blocking(
        SendParams(
            to="a@b.com",
            template_name="data_export_ready",
            subject="Custom subject",
            data={"FileSize": "1.0 KB", "DownloadLink": "https://x/settings/privacy", "ExpiresIn": "7 days"},
        )
    )
    ((msg, kwargs),) = sent
    assert msg["To"] == "a@b.com"
    assert msg["From"] == "bot@example.com"
    assert msg["Subject"] == "Custom subject"
    assert "expires in 7 days" in msg.get_content()
    assert kwargs["hostname"] == "smtp.example.com"
    assert kwargs["start_tls"] is True


def test_smtp_failure_raises_email_error(monkeypatch):
    async def broken(msg, **kwargs):
        raise aiosmtplib.SMTPException("connection refused")

    monkeypatch.setattr(email_utils.aiosmtplib, "send", broken)
    with pytest.raises(EmailError, match="smtp send failed"):
        smtp_service().send_blocking(SendParams(to="a@b.com", template_name="password_reset", data={"Name": "A", "ResetURL": "u"}))


def test_missing_recipient_rejected():
    with pytest.raises(EmailError):
        smtp_service().send_blocking(SendParams(to="", template_name="verification"))
