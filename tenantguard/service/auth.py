from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tenantguard.config import Settings
from tenantguard.logging import bind_auth_context, get_logger, redact_email
from tenantguard.service.audit import AuditEmitter
from tenantguard.service.credentials import (
    CredentialVerifier,
    check_password_strength,
    ensure_tenant_active,
)
from tenantguard.service.device import fingerprint_for
from tenantguard.service.email import Notifier
from tenantguard.service.errors import (
    AuthenticationFailed,
    SecondFactorInvalid,
    ServerError,
    ServiceError,
    ValidationError,
)
from tenantguard.service.rate_limit import RateLimiter
from tenantguard.service.sessions import AuthContext, IssuedSession, SessionService
from tenantguard.service.tenancy import AuthStore, TenantGate
from tenantguard.service.tokens import SECOND_FACTOR, TokenService, hash_token
from tenantguard.service.two_factor import SecondFactorService
from tenantguard.storage.common import normalize_email, validate_tenant_id
from tenantguard.storage.errors import TenantIsolationViolation
from tenantguard.storage.models import DeviceInfo, Tenant, User

logger = get_logger(__name__)

AUTHENTICATED = "authenticated"
SECOND_FACTOR_REQUIRED = "second_factor_required"
SECOND_FACTOR_METHODS = ("totp", "backup")


@dataclass
class LoginResult:
    status: str
    user: User
    tenant: Tenant
    session: Optional[IssuedSession] = None
    second_factor_token: Optional[str] = None
    device_token: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.status == AUTHENTICATED

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": self.status,
            "user_id": self.user.id,
            "tenant_id": self.tenant.id,
        }
        if self.session is not None:
            body.update(self.session.to_dict())
        if self.second_factor_token:
            body["second_factor_token"] = self.second_factor_token
        if self.device_token:
            body["device_token"] = self.device_token
        return body


class AuthService:
    """Login orchestration over the credential, session and second-factor services.

    Every public operation emits an audit event once its gate has closed.
    """

    def __init__(
        self,
        store: AuthStore,
        gate: TenantGate,
        cache,
        settings: Settings,
        *,
        verifier: CredentialVerifier,
        sessions: SessionService,
        two_factor: SecondFactorService,
        tokens: TokenService,
        rate_limiter: RateLimiter,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditEmitter] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.cache = cache
        self.settings = settings
        self.verifier = verifier
        self.sessions = sessions
        self.two_factor = two_factor
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.audit = audit

    def _audit(
        self,
        tenant_id: Optional[str],
        action: str,
        *,
        user_id: Optional[str] = None,
        status: str = "success",
        device: Optional[DeviceInfo] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.record(
            tenant_id,
            action,
            "auth",
            user_id=user_id,
            resource_id=user_id,
            status=status,
            ip_address=device.ip_address if device else None,
            user_agent=device.user_agent if device else None,
            metadata=metadata,
        )

    def _known_tenant(self, tenant_id: str) -> Optional[str]:
        """Canonical id of an existing tenant, for attributing failure events."""
        try:
            canonical = validate_tenant_id(tenant_id)
        except TenantIsolationViolation:
            return None
        return canonical if self.store.get_tenant(canonical) is not None else None

    # -- login -------------------------------------------------------------

    async def login(
        self,
        tenant_id: str,
        email: str,
        password: str,
        *,
        device: Optional[DeviceInfo] = None,
        remember_me: bool = False,
        device_token: Optional[str] = None,
    ) -> LoginResult:
        try:
            primary = await self.verifier.verify_primary(
                tenant_id,
                email,
                password,
                ip_address=device.ip_address if device else None,
            )
        except ServiceError as exc:
            known = self._known_tenant(tenant_id)
            self._audit(
                known,
                "login_failed",
                status="failure",
                device=device,
                metadata={
                    "error_code": exc.error_code,
                    "email": redact_email(normalize_email(email)),
                    **({} if known else {"tenant_id": str(tenant_id)}),
                },
            )
            raise

        tenant, user = primary.tenant, primary.user
        bind_auth_context(tenant_id=tenant.id, user_id=user.id)
        if primary.requires_second_factor:
            trusted = await self.two_factor.is_device_trusted(
                tenant.id, user.id, fingerprint_for(device), device_token
            )
            if not trusted:
                self._audit(tenant.id, "login_second_factor_pending", user_id=user.id, device=device)
                return LoginResult(
                    status=SECOND_FACTOR_REQUIRED,
                    user=user,
                    tenant=tenant,
                    second_factor_token=primary.second_factor_token,
                )
            logger.info("second_factor_skipped_trusted_device", tenant_id=tenant.id, user_id=user.id)

        issued = await self.sessions.issue_session(
            tenant, user, device=device, remember_me=remember_me
        )
        self._audit(
            tenant.id,
            "login_success",
            user_id=user.id,
            device=device,
            metadata={"second_factor": "trusted_device" if primary.requires_second_factor else None},
        )
        return LoginResult(status=AUTHENTICATED, user=user, tenant=tenant, session=issued)

    async def complete_second_factor(
        self,
        pending_token: str,
        code: str,
        *,
        method: str = "totp",
        device: Optional[DeviceInfo] = None,
        remember_me: bool = False,
        trust_device: bool = False,
    ) -> LoginResult:
        """Finish a login that stopped at ``second_factor_required``.

        The pending token is spent only once a code verifies, so a mistyped
        code can be retried until the second-factor rate limit trips.
        """
        if method not in SECOND_FACTOR_METHODS:
            raise ValidationError("unknown second factor method", detail={"method": method})
        claims = self.tokens.decode(pending_token, SECOND_FACTOR)
        if claims is None:
            logger.warning("second_factor_token_rejected")
            raise AuthenticationFailed("invalid or expired token")
        tenant = ensure_tenant_active(self.store.get_tenant(claims.tenant_id))

        with self.gate.scope(tenant.id, read_only=True) as tx:
            user = tx.get_user(claims.sub)
        if user is None or not user.can_login or not user.two_factor_enabled:
            logger.warning(
                "second_factor_principal_rejected", tenant_id=tenant.id, user_id=claims.sub
            )
            raise AuthenticationFailed("invalid or expired token")

        if method == "totp":
            ok = await self.two_factor.verify_totp(tenant.id, user.id, code)
        else:
            ok = await self.two_factor.verify_backup_code(tenant.id, user.id, code)
        if not ok:
            self._audit(
                tenant.id,
                "2fa_failed",
                user_id=user.id,
                status="failure",
                device=device,
                metadata={"method": method},
            )
            raise SecondFactorInvalid()

        remaining = int((claims.expires_at - self.tokens._now()).total_seconds())
        try:
            first_use = await self.cache.claim_once(
                f"auth:2fa_used:{claims.jti}", max(remaining, 1)
            )
        except Exception as exc:
            logger.error("second_factor_claim_unavailable", tenant_id=tenant.id, error=str(exc))
            raise ServerError("second factor verification unavailable") from exc
        if not first_use:
            logger.warning("second_factor_token_replayed", tenant_id=tenant.id, user_id=user.id)
            raise AuthenticationFailed("invalid or expired token")

        issued = await self.sessions.issue_session(
            tenant, user, device=device, remember_me=remember_me
        )
        device_token: Optional[str] = None
        if trust_device:
            fingerprint = fingerprint_for(device)
            if fingerprint:
                device_token = await self.two_factor.trust_device(tenant.id, user.id, fingerprint)
        self._audit(
            tenant.id,
            "login_success",
            user_id=user.id,
            device=device,
            metadata={"second_factor": method, "device_trusted": device_token is not None},
        )
        return LoginResult(
            status=AUTHENTICATED,
            user=user,
            tenant=tenant,
            session=issued,
            device_token=device_token,
        )

    async def enable_second_factor(
        self, tenant_id: str, user_id: str, secret: str, code: str, backup_codes: List[str]
    ) -> None:
        """Enable TOTP and send the confirmation email."""
        await self.two_factor.enable(tenant_id, user_id, secret, code, backup_codes)
        with self.gate.scope(tenant_id, read_only=True) as tx:
            user = tx.get_user(user_id)
        if user is not None and self.notifier is not None:
            await asyncio.to_thread(self.notifier.send_two_factor_enabled, user.email)

    # -- logout ------------------------------------------------------------

    async def logout(self, access_token: str) -> bool:
        claims = self.sessions.verify_access_token(access_token)
        revoked = await self.sessions.revoke(claims.tenant_id, claims.sid, user_id=claims.sub)
        self._audit(claims.tenant_id, "logout", user_id=claims.sub, metadata={"session_id": claims.sid})
        return revoked

    async def logout_all(self, access_token: str, *, keep_current: bool = True) -> int:
        ctx: AuthContext = await self.sessions.authenticate(access_token)
        count = await self.sessions.revoke_all(
            ctx.tenant_id,
            ctx.user_id,
            except_session_id=ctx.session_id if keep_current else None,
        )
        self._audit(
            ctx.tenant_id,
            "logout_all",
            user_id=ctx.user_id,
            metadata={"revoked": count, "kept_current": keep_current},
        )
        return count

    # -- passwords ---------------------------------------------------------

    async def change_password(
        self,
        tenant_id: str,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
    ) -> int:
        """Replace the password and revoke every other session. Returns the revoked count."""
        check_password_strength(new_password)
        if current_password == new_password:
            raise ValidationError("new password must differ from the current one")
        new_hash = self.verifier.hash_password(new_password)

        verified = False
        with self.gate.scope(tenant_id) as tx:
            user = tx.get_user(user_id)
            if user is not None and self.verifier.verify_password(
                user.password_hash, current_password
            ):
                tx.update_password_hash(user_id, new_hash)
                verified = True
        if not verified:
            logger.warning("password_change_rejected", tenant_id=tenant_id, user_id=user_id)
            self._audit(tenant_id, "password_change_failed", user_id=user_id, status="failure")
            raise AuthenticationFailed("current password is incorrect")

        revoked = await self.sessions.revoke_all(
            tenant_id, user_id, except_session_id=current_session_id
        )
        logger.info("password_changed", tenant_id=tenant_id, user_id=user_id, sessions_revoked=revoked)
        self._audit(tenant_id, "password_changed", user_id=user_id, metadata={"sessions_revoked": revoked})
        return revoked

    @property
    def password_reset_ttl_seconds(self) -> int:
        return self.settings.password_reset_ttl_minutes * 60

    async def request_password_reset(self, tenant_id: str, email: str) -> None:
        """Send a reset link if the principal exists; the outcome is never returned."""
        email = normalize_email(email)
        try:
            tenant_key = validate_tenant_id(tenant_id)
        except TenantIsolationViolation:
            logger.warning("password_reset_ignored", reason="malformed_tenant")
            return
        await self.rate_limiter.hit(
            f"reset:{email}",
            limit=self.settings.max_login_attempts,
            window_seconds=self.settings.login_rate_limit_window_seconds,
            tenant_id=tenant_key,
        )
        tenant = self.store.get_tenant(tenant_key)
        if tenant is None or not tenant.can_access:
            logger.warning("password_reset_ignored", tenant_id=tenant_key, reason="tenant_unavailable")
            return

        with self.gate.scope(tenant.id, read_only=True) as tx:
            user = tx.get_user_by_email(email)
        if user is None or user.status != "active":
            logger.info("password_reset_ignored", tenant_id=tenant.id, reason="no_active_user")
            return

        token = secrets.token_urlsafe(32)
        try:
            await self.cache.set_password_reset(
                hash_token(token),
                {"tenant_id": tenant.id, "user_id": user.id},
                self.password_reset_ttl_seconds,
            )
        except Exception as exc:
            logger.error("password_reset_store_failed", tenant_id=tenant.id, error=str(exc))
            return
        if self.notifier is not None:
            await asyncio.to_thread(
                self.notifier.send_password_reset,
                user.email,
                token,
                tenant_slug=tenant.slug,
                expires_minutes=self.settings.password_reset_ttl_minutes,
            )
        logger.info("password_reset_requested", tenant_id=tenant.id, user_id=user.id)
        self._audit(tenant.id, "password_reset_requested", user_id=user.id)

    async def complete_password_reset(self, tenant_id: str, token: str, new_password: str) -> None:
        check_password_strength(new_password)
        tenant_key = validate_tenant_id(tenant_id)
        try:
            record = await self.cache.pop_password_reset(hash_token(token or ""))
        except Exception as exc:
            logger.error("password_reset_lookup_failed", tenant_id=tenant_key, error=str(exc))
            raise ServerError("password reset unavailable") from exc
        if not record or record.get("tenant_id") != tenant_key:
            logger.warning("password_reset_invalid_token", tenant_id=tenant_key)
            raise AuthenticationFailed("invalid or expired reset token")
        tenant = ensure_tenant_active(self.store.get_tenant(tenant_key))
        user_id = record["user_id"]
        new_hash = self.verifier.hash_password(new_password)

        revoked = 0
        with self.gate.scope(tenant.id) as tx:
            user = tx.get_user(user_id)
            if user is not None:
                tx.update_password_hash(user_id, new_hash)
                revoked = tx.revoke_user_sessions(user_id)
        if user is None:
            logger.warning("password_reset_user_missing", tenant_id=tenant.id, user_id=user_id)
            raise AuthenticationFailed("invalid or expired reset token")

        await self.two_factor.revoke_trusted_devices(tenant.id, user_id)
        await self.rate_limiter.reset_login(tenant.id, user.email)
        logger.info("password_reset_completed", tenant_id=tenant.id, user_id=user_id, sessions_revoked=revoked)
        self._audit(tenant.id, "password_reset_completed", user_id=user_id, metadata={"sessions_revoked": revoked})
