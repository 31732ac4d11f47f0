import pytest
from pydantic import ValidationError

from tenantguard.config import Settings, get_settings, reset_settings_cache
from tenantguard.logging import _redact_pii, redact_email


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
    monkeypatch.setenv("EMAIL_FROM", "noreply@example.test")
    settings = Settings.from_env()
    assert settings.max_login_attempts == 7
    assert settings.email_from_address == "noreply@example.test"


def test_get_settings_is_cached_until_reset():
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first
    reset_settings_cache()


def test_non_positive_limits_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, max_login_attempts=0)


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret


def test_log_redaction():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "owner@acme.test",
            "token": "abcdefgh",
            "code": "123",
            "token_hash": "deadbeef",
            "error_code": "unauthorized",
        },
    )
    assert event["email"] == "ow***st"
    assert event["token"] == "ab***gh"
    assert event["code"] == "***"
    assert event["token_hash"] == "deadbeef"
    assert event["error_code"] == "unauthorized"
    assert redact_email("owner@acme.test") == "ow***@acme.test"
