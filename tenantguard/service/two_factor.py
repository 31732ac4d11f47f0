from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditEmitter
from tenantguard.service.errors import NotFoundError, SecondFactorInvalid, ValidationError
from tenantguard.service.rate_limit import RateLimiter
from tenantguard.service.tenancy import TenantGate
from tenantguard.service.tokens import hash_token
from tenantguard.storage.models import TwoFactorConfig

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_WINDOW = 1
BACKUP_CODE_COUNT = 10
BACKUP_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


def normalize_backup_code(code: str) -> str:
    return (code or "").replace(" ", "").replace("-", "").upper()


def format_backup_code(code: str) -> str:
    code = normalize_backup_code(code)
    return f"{code[:4]}-{code[4:]}"


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    """``count`` codes of the form XXXX-XXXX."""
    return [
        format_backup_code("".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(8)))
        for _ in range(count)
    ]


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_PERIOD, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code with HMAC-SHA1, the algorithm authenticator apps expect."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except Exception:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


@dataclass
class SecondFactorEnrollment:
    """Material shown once while the user sets up an authenticator. Not persisted."""

    secret: str
    qr_payload: str
    backup_codes: List[str] = field(default_factory=list)


class SecondFactorService:
    """TOTP and backup-code verification plus trusted-device bookkeeping."""

    def __init__(
        self,
        gate: TenantGate,
        cache,
        rate_limiter: RateLimiter,
        settings: Settings,
        *,
        audit: Optional[AuditEmitter] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gate = gate
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.settings = settings
        self.audit = audit
        self._clock = clock

    def _audit(self, tenant_id: str, action: str, user_id: str, **kwargs: Any) -> None:
        if self.audit is not None:
            self.audit.record(
                tenant_id, action, "two_factor", user_id=user_id, resource_id=user_id, **kwargs
            )

    # -- enrollment --------------------------------------------------------

    def generate_secret(self, account_name: str) -> SecondFactorEnrollment:
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{account_name}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_PERIOD,
            },
            quote_via=quote,
        )
        return SecondFactorEnrollment(
            secret=secret,
            qr_payload=f"otpauth://totp/{label}?{query}",
            backup_codes=generate_backup_codes(),
        )

    def current_code(self, secret: str) -> str:
        return generate_totp(secret, self._clock())

    def _matching_step(self, secret: str, code: str) -> Optional[int]:
        code = (code or "").replace(" ", "")
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return None
        current = int(self._clock() // TOTP_PERIOD)
        matched: Optional[int] = None
        # Check every candidate so timing does not depend on which step matched
        for step in range(current - TOTP_WINDOW, current + TOTP_WINDOW + 1):
            generated = generate_totp(secret, step * TOTP_PERIOD)
            if generated and hmac.compare_digest(generated, code) and matched is None:
                matched = step
        return matched

    async def enable(
        self,
        tenant_id: str,
        user_id: str,
        secret: str,
        code: str,
        backup_codes: List[str],
    ) -> None:
        """Persist the proposed secret only if ``code`` proves the user holds it."""
        if self._matching_step(secret, code) is None:
            logger.warning("2fa_enable_code_invalid", tenant_id=tenant_id, user_id=user_id)
            raise SecondFactorInvalid()
        with self.gate.scope(tenant_id) as tx:
            user = tx.get_user(user_id)
            if user is None:
                raise NotFoundError("user not found")
            tx.save_two_factor(
                TwoFactorConfig(
                    user_id=user_id,
                    tenant_id=user.tenant_id,
                    secret=secret,
                    backup_codes=[normalize_backup_code(c) for c in backup_codes],
                    enabled=True,
                    enabled_at=datetime.now(timezone.utc),
                )
            )
        logger.info("2fa_enabled", tenant_id=tenant_id, user_id=user_id)
        self._audit(tenant_id, "2fa_enabled", user_id)

    async def disable(self, tenant_id: str, user_id: str) -> bool:
        with self.gate.scope(tenant_id) as tx:
            removed = tx.delete_two_factor(user_id)
        await self.revoke_trusted_devices(tenant_id, user_id)
        if removed:
            logger.info("2fa_disabled", tenant_id=tenant_id, user_id=user_id)
            self._audit(tenant_id, "2fa_disabled", user_id)
        return removed

    async def regenerate_backup_codes(self, tenant_id: str, user_id: str) -> List[str]:
        codes = generate_backup_codes()
        with self.gate.scope(tenant_id) as tx:
            cfg = tx.get_two_factor(user_id)
            if cfg is None or not cfg.enabled:
                raise ValidationError("two-factor authentication is not enabled")
            tx.set_backup_codes(user_id, [normalize_backup_code(c) for c in codes])
        self._audit(tenant_id, "2fa_backup_codes_regenerated", user_id)
        return codes

    async def remaining_backup_codes(self, tenant_id: str, user_id: str) -> int:
        with self.gate.scope(tenant_id, read_only=True) as tx:
            cfg = tx.get_two_factor(user_id)
        return len(cfg.backup_codes) if cfg and cfg.enabled else 0

    async def status(self, tenant_id: str, user_id: str) -> Dict[str, Any]:
        with self.gate.scope(tenant_id, read_only=True) as tx:
            cfg = tx.get_two_factor(user_id)
        enabled = bool(cfg and cfg.enabled)
        return {
            "enabled": enabled,
            "enabled_at": cfg.enabled_at.isoformat() if enabled and cfg.enabled_at else None,
            "backup_codes_remaining": len(cfg.backup_codes) if enabled else 0,
        }

    # -- verification ------------------------------------------------------

    async def verify_totp(self, tenant_id: str, user_id: str, code: str) -> bool:
        await self.rate_limiter.hit_second_factor(tenant_id, user_id)
        outcome = "ok"
        with self.gate.scope(tenant_id) as tx:
            cfg = tx.get_two_factor(user_id)
            if cfg is None or not cfg.enabled:
                outcome = "not_enabled"
            else:
                step = self._matching_step(cfg.secret, code)
                if step is None:
                    outcome = "invalid_code"
                elif not tx.advance_totp_step(user_id, step):
                    outcome = "replayed_code"
        if outcome != "ok":
            logger.warning(
                "2fa_verification_failed", tenant_id=tenant_id, user_id=user_id, reason=outcome
            )
            return False
        await self.rate_limiter.reset_second_factor(tenant_id, user_id)
        return True

    async def verify_backup_code(self, tenant_id: str, user_id: str, code: str) -> bool:
        await self.rate_limiter.hit_second_factor(tenant_id, user_id)
        normalized = normalize_backup_code(code)
        consumed = False
        remaining = 0
        if len(normalized) == 8:
            with self.gate.scope(tenant_id) as tx:
                consumed = tx.consume_backup_code(user_id, normalized)
                if consumed:
                    cfg = tx.get_two_factor(user_id)
                    remaining = len(cfg.backup_codes) if cfg else 0
        if not consumed:
            logger.warning(
                "2fa_verification_failed",
                tenant_id=tenant_id,
                user_id=user_id,
                reason="invalid_backup_code",
            )
            return False
        await self.rate_limiter.reset_second_factor(tenant_id, user_id)
        logger.info("backup_code_used", tenant_id=tenant_id, user_id=user_id, remaining=remaining)
        self._audit(tenant_id, "2fa_backup_code_used", user_id, metadata={"remaining": remaining})
        return True

    # -- trusted devices ---------------------------------------------------

    @property
    def trusted_device_ttl_seconds(self) -> int:
        return self.settings.trusted_device_ttl_days * 86400

    async def trust_device(self, tenant_id: str, user_id: str, fingerprint: str) -> Optional[str]:
        """Remember a device; returns the raw device token or None if the cache is down."""
        if not fingerprint:
            return None
        device_token = secrets.token_urlsafe(32)
        try:
            await self.cache.set_trusted_device(
                tenant_id,
                user_id,
                fingerprint,
                hash_token(device_token),
                self.trusted_device_ttl_seconds,
            )
        except Exception as exc:
            logger.warning(
                "trusted_device_store_failed", tenant_id=tenant_id, user_id=user_id, error=str(exc)
            )
            return None
        self._audit(tenant_id, "device_trusted", user_id)
        return device_token

    async def is_device_trusted(
        self,
        tenant_id: str,
        user_id: str,
        fingerprint: Optional[str],
        device_token: Optional[str],
    ) -> bool:
        if not fingerprint or not device_token:
            return False
        try:
            stored = await self.cache.get_trusted_device(tenant_id, user_id, fingerprint)
        except Exception as exc:
            # Unknown trust state means untrusted
            logger.warning(
                "trusted_device_lookup_failed", tenant_id=tenant_id, user_id=user_id, error=str(exc)
            )
            return False
        if not stored:
            return False
        return hmac.compare_digest(stored, hash_token(device_token))

    async def revoke_trusted_devices(self, tenant_id: str, user_id: str) -> int:
        try:
            removed = await self.cache.delete_trusted_devices(tenant_id, user_id)
        except Exception as exc:
            logger.warning(
                "trusted_device_revoke_failed", tenant_id=tenant_id, user_id=user_id, error=str(exc)
            )
            return 0
        if removed:
            self._audit(tenant_id, "trusted_devices_revoked", user_id, metadata={"count": removed})
        return removed

    async def require_second_factor(
        self,
        tenant_id: str,
        user_id: str,
        *,
        fingerprint: Optional[str] = None,
        device_token: Optional[str] = None,
    ) -> bool:
        with self.gate.scope(tenant_id, read_only=True) as tx:
            user = tx.get_user(user_id)
        if user is None or not user.two_factor_enabled:
            return False
        return not await self.is_device_trusted(tenant_id, user_id, fingerprint, device_token)
