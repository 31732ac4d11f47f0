from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authorization and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows the in-process cache fallback.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Signing key for refresh tokens; derived from JWT_SECRET when unset",
    )
    jwt_issuer: str = env_field("tenantguard", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantguard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    remember_me_ttl_days: int = env_field(
        30,
        "REMEMBER_ME_TTL_DAYS",
        description="Refresh token lifetime when the user asks to be remembered",
    )
    second_factor_token_ttl_minutes: int = env_field(
        5, "SECOND_FACTOR_TOKEN_TTL_MINUTES"
    )
    session_inactivity_minutes: int = env_field(
        30,
        "SESSION_INACTIVITY_MINUTES",
        description="Idle time after which an access token's session is treated as expired; 0 disables",
    )
    trusted_device_ttl_days: int = env_field(30, "TRUSTED_DEVICE_TTL_DAYS")
    permission_cache_ttl_seconds: int = env_field(
        15 * 60, "PERMISSION_CACHE_TTL_SECONDS"
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(
        5 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    max_2fa_attempts: int = env_field(5, "MAX_2FA_ATTEMPTS")
    two_factor_rate_limit_window_seconds: int = env_field(
        15 * 60, "TWO_FACTOR_RATE_LIMIT_WINDOW_SECONDS"
    )
    totp_issuer: str = env_field("MyERP v2", "TOTP_ISSUER")
    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Key material for encrypting second-factor secrets at rest",
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    verification_token_ttl_hours: int = env_field(
        24,
        "VERIFICATION_TOKEN_TTL_HOURS",
        description="Lifetime of the link that activates a newly registered tenant",
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM")
    email_from_name: str = env_field("MyERP v2", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "remember_me_ttl_days",
        "second_factor_token_ttl_minutes",
        "trusted_device_ttl_days",
        "permission_cache_ttl_seconds",
        "max_login_attempts",
        "login_rate_limit_window_seconds",
        "max_2fa_attempts",
        "two_factor_rate_limit_window_seconds",
        "password_reset_ttl_minutes",
        "verification_token_ttl_hours",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except Exception as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except Exception as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @field_validator("jwt_secret")
    @classmethod
    def _reject_short_secret(cls, value: str) -> str:
        if len(value) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
