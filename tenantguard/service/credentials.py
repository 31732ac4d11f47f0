from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantguard.logging import get_logger
from tenantguard.service.errors import (
    AuthenticationFailed,
    TenantSuspended,
    TenantUnverified,
    ValidationError,
)
from tenantguard.service.rate_limit import RateLimiter
from tenantguard.service.tenancy import AuthStore, TenantGate
from tenantguard.service.tokens import TokenService
from tenantguard.storage.common import validate_tenant_id
from tenantguard.storage.errors import TenantIsolationViolation
from tenantguard.storage.models import Tenant, User

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 12
PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{}|;':\",./<>?`~\\"


def check_password_strength(password: str) -> None:
    """Require 12+ characters and at least 3 of upper, lower, digit, symbol."""
    password = password or ""
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(c in PASSWORD_SYMBOLS for c in password),
    ]
    problems = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"at least {PASSWORD_MIN_LENGTH} characters")
    if sum(classes) < 3:
        problems.append("three of: uppercase, lowercase, digit, symbol")
    if problems:
        raise ValidationError(
            "password does not meet complexity requirements",
            detail={"requirements": problems},
        )


def ensure_tenant_active(tenant: Optional[Tenant]) -> Tenant:
    """Raise unless ``tenant`` exists and may hold sessions."""
    if tenant is None:
        raise AuthenticationFailed()
    if tenant.status in ("suspended", "canceled"):
        logger.warning("tenant_access_denied", tenant_id=tenant.id, status=tenant.status)
        raise TenantSuspended(f"tenant is {tenant.status}")
    if tenant.status == "pending_verification":
        raise TenantUnverified("tenant has not been verified")
    if not tenant.can_access:
        raise TenantSuspended("tenant is not active")
    return tenant


@dataclass
class PrimaryVerification:
    user: User
    tenant: Tenant
    requires_second_factor: bool
    second_factor_token: Optional[str] = None


class CredentialVerifier:
    """Primary credential check: rate limit, tenant status, then argon2id."""

    def __init__(
        self,
        store: AuthStore,
        gate: TenantGate,
        tokens: TokenService,
        rate_limiter: RateLimiter,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def _burn_dummy(self, password: str) -> None:
        self.verify_password(self._dummy_hash, password)

    async def verify_primary(
        self,
        tenant_id: str,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
    ) -> PrimaryVerification:
        try:
            tenant_key = validate_tenant_id(tenant_id)
        except TenantIsolationViolation:
            tenant_key = None
        # Counted before any lookup or comparison
        await self.rate_limiter.hit_login(tenant_key or str(tenant_id), email)

        tenant = self.store.get_tenant(tenant_key) if tenant_key else None
        if tenant is None:
            self._burn_dummy(password)
            logger.warning("login_failed", tenant_id=str(tenant_id), reason="unknown_tenant")
            raise AuthenticationFailed()
        ensure_tenant_active(tenant)

        failure: Optional[str] = None
        with self.gate.scope(tenant.id) as tx:
            user = tx.get_user_by_email(email)
            if user is None:
                self._burn_dummy(password)
                failure = "unknown_user"
            elif not self.verify_password(user.password_hash, password):
                failure = "bad_password"
            elif not user.can_login:
                failure = "user_cannot_login"
            else:
                if self.needs_rehash(user.password_hash):
                    tx.update_password_hash(user.id, self.hash_password(password))
                    logger.info("password_rehashed", tenant_id=tenant.id, user_id=user.id)
                tx.record_login(user.id, ip_address)

        if failure is not None:
            logger.warning(
                "login_failed",
                tenant_id=tenant.id,
                user_id=user.id if user else None,
                reason=failure,
            )
            raise AuthenticationFailed()

        await self.rate_limiter.reset_login(tenant.id, email)

        if user.two_factor_enabled:
            token, _ = self.tokens.issue_second_factor_token(tenant, user)
            logger.info("second_factor_pending", tenant_id=tenant.id, user_id=user.id)
            return PrimaryVerification(user, tenant, True, token)
        return PrimaryVerification(user, tenant, False)
