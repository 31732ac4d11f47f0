import smtplib
from unittest.mock import MagicMock, patch

from tenantguard.service.email import EmailService


def _configured(**kwargs):
    defaults = dict(
        smtp_host="smtp.example.test",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="secret",
        from_email="noreply@example.test",
        base_url="https://erp.example.test/",
    )
    defaults.update(kwargs)
    return EmailService(**defaults)


def test_unconfigured_service_logs_instead_of_sending():
    service = EmailService()
    assert not service.is_configured
    with patch("tenantguard.service.email.smtplib.SMTP") as smtp:
        assert service.send_password_reset("user@acme.test", "tok", tenant_slug="acme") is True
        smtp.assert_not_called()


def test_from_settings(settings):
    service = EmailService.from_settings(
        settings.model_copy(update={"smtp_host": "mail.test", "email_from_address": "a@b.test"})
    )
    assert service.is_configured
    assert service.from_name == "MyERP v2"


def test_render_escapes_and_includes_link():
    service = EmailService()
    html, text = service._render(
        "Hello <world>", ["a & b"], link="https://x.test/?a=1&b=2", link_label="Go"
    )
    assert "Hello &lt;world&gt;" in html
    assert "a &amp; b" in html
    assert "https://x.test/?a=1&amp;b=2" in html
    assert text.startswith("Hello <world>\n")
    assert "https://x.test/?a=1&b=2" in text


def test_password_reset_link_carries_tenant_and_token():
    service = _configured()
    with patch.object(service, "_send_email", return_value=True) as send:
        service.send_password_reset("user@acme.test", "tok123", tenant_slug="acme", expires_minutes=60)
    to_email, subject, html, text = send.call_args[0]
    assert to_email == "user@acme.test"
    assert subject == "Reset your MyERP v2 password"
    assert "https://erp.example.test/auth/reset-password?tenant=acme&token=tok123" in text
    assert "60 minutes" in text


def test_verification_link_carries_tenant_and_expiry():
    service = _configured()
    with patch.object(service, "_send_email", return_value=True) as send:
        service.send_verification("owner@initech.test", "tok456", tenant_slug="initech", expires_hours=48)
    _, subject, _, text = send.call_args[0]
    assert subject == "Verify your MyERP v2 email"
    assert "https://erp.example.test/auth/verify-email?tenant=initech&token=tok456" in text
    assert "48 hours" in text


def test_smtp_delivery_uses_starttls():
    service = _configured()
    server = MagicMock()
    with patch("tenantguard.service.email.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        assert service.send_two_factor_enabled("user@acme.test") is True
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer", "secret")
    args = server.sendmail.call_args[0]
    assert args[0] == "noreply@example.test"
    assert args[1] == "user@acme.test"


def test_smtp_failure_returns_false():
    service = _configured()
    with patch("tenantguard.service.email.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value.login.side_effect = smtplib.SMTPAuthenticationError(
            535, b"bad credentials"
        )
        assert service.send_verification("user@acme.test", "tok", tenant_slug="acme") is False


def test_transport_error_returns_false():
    service = _configured(smtp_use_tls=False)
    with patch("tenantguard.service.email.smtplib.SMTP_SSL", side_effect=OSError("refused")):
        assert service.send_two_factor_enabled("user@acme.test") is False
