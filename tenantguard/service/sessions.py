from __future__ import annotations

import hmac
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditEmitter
from tenantguard.service.credentials import ensure_tenant_active
from tenantguard.service.errors import (
    AuthenticationFailed,
    SecondFactorRequired,
    SessionRevokedOrExpired,
)
from tenantguard.service.tenancy import AuthStore, TenantGate
from tenantguard.service.tokens import (
    ACCESS,
    REFRESH,
    SECOND_FACTOR,
    TokenClaims,
    TokenService,
    hash_token,
)
from tenantguard.storage.common import generate_uuid
from tenantguard.storage.models import DeviceInfo, Session, Tenant, User

logger = get_logger(__name__)


@dataclass
class IssuedSession:
    """Raw tokens for a session; returned once and never stored."""

    session: Session
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session.id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


@dataclass
class AuthContext:
    """A fully authenticated caller, valid for one request."""

    tenant_id: str
    tenant_slug: str
    user_id: str
    email: str
    session_id: str
    claims: TokenClaims


@dataclass
class SessionSummary:
    session: Session
    is_current: bool = False


class SessionService:
    """Issues, validates, rotates and revokes sessions.

    Session validity is read from the store on every call and never cached.
    """

    def __init__(
        self,
        store: AuthStore,
        gate: TenantGate,
        tokens: TokenService,
        settings: Settings,
        *,
        audit: Optional[AuditEmitter] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.tokens = tokens
        self.settings = settings
        self.audit = audit

    def _now(self) -> datetime:
        return self.tokens._now()

    @property
    def inactivity_limit(self) -> Optional[timedelta]:
        minutes = self.settings.session_inactivity_minutes
        return timedelta(minutes=minutes) if minutes > 0 else None

    def _audit(self, tenant_id: Optional[str], action: str, **kwargs: Any) -> None:
        if self.audit is not None:
            self.audit.record(tenant_id, action, "session", **kwargs)

    def _session_problem(
        self,
        session: Optional[Session],
        user_id: str,
        now: datetime,
        *,
        check_idle: bool = True,
    ) -> Optional[str]:
        if session is None or session.user_id != user_id:
            return "session_missing"
        if session.revoked_at is not None:
            return "session_revoked"
        if not session.is_active(now):
            return "session_expired"
        limit = self.inactivity_limit if check_idle else None
        if limit is not None and session.is_idle(limit, now):
            return "session_idle"
        return None

    async def issue_session(
        self,
        tenant: Tenant,
        user: User,
        *,
        device: Optional[DeviceInfo] = None,
        remember_me: bool = False,
    ) -> IssuedSession:
        session_id = generate_uuid()
        access_token, access_claims = self.tokens.issue_access_token(tenant, user, session_id)
        refresh_token, refresh_claims = self.tokens.issue_refresh_token(
            tenant, user, session_id, remember_me=remember_me
        )
        session = Session.new(
            tenant.id,
            user.id,
            access_token_hash=hash_token(access_token),
            refresh_token_hash=hash_token(refresh_token),
            ttl=self.tokens.refresh_ttl(remember_me),
            session_id=session_id,
            remember_me=remember_me,
            device=device,
            now=self._now(),
        )
        with self.gate.scope(tenant.id) as tx:
            stored = tx.create_session(session)
        logger.info(
            "session_issued",
            tenant_id=tenant.id,
            user_id=user.id,
            session_id=stored.id,
            remember_me=remember_me,
        )
        self._audit(
            tenant.id,
            "session_created",
            user_id=user.id,
            resource_id=stored.id,
            ip_address=stored.ip_address,
            user_agent=stored.user_agent,
            metadata={"device_type": stored.device_type, "remember_me": remember_me},
        )
        return IssuedSession(
            session=stored,
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        """Stateless check of signature, type and expiry."""
        claims = self.tokens.decode(token, ACCESS)
        if claims is None:
            raise AuthenticationFailed("invalid or expired token")
        return claims

    async def authenticate(self, access_token: str) -> AuthContext:
        if self.tokens.peek_type(access_token) == SECOND_FACTOR:
            if self.tokens.decode(access_token, SECOND_FACTOR) is not None:
                raise SecondFactorRequired()
            raise AuthenticationFailed("invalid or expired token")
        claims = self.verify_access_token(access_token)
        ensure_tenant_active(self.store.get_tenant(claims.tenant_id))

        now = self._now()
        problem: Optional[str] = None
        with self.gate.scope(claims.tenant_id) as tx:
            session = tx.get_session(claims.sid)
            problem = self._session_problem(session, claims.sub, now)
            if problem is None and not hmac.compare_digest(
                session.access_token_hash, hash_token(access_token)
            ):
                problem = "access_token_superseded"
            if problem is None:
                user = tx.get_user(claims.sub)
                if user is None or not user.can_login:
                    problem = "user_cannot_login"
            if problem is None:
                tx.touch_session(session.id, now)
            elif problem == "session_idle":
                tx.revoke_session(session.id)

        if problem is not None:
            logger.warning(
                "session_rejected",
                tenant_id=claims.tenant_id,
                user_id=claims.sub,
                session_id=claims.sid,
                reason=problem,
            )
            raise SessionRevokedOrExpired()
        return AuthContext(
            tenant_id=claims.tenant_id,
            tenant_slug=claims.tenant_slug,
            user_id=claims.sub,
            email=claims.email,
            session_id=claims.sid,
            claims=claims,
        )

    async def refresh(self, refresh_token: str, *, rotate: bool = True) -> IssuedSession:
        claims = self.tokens.decode(refresh_token, REFRESH)
        if claims is None:
            raise AuthenticationFailed("invalid or expired token")
        tenant = ensure_tenant_active(self.store.get_tenant(claims.tenant_id))

        now = self._now()
        problem: Optional[str] = None
        issued: Optional[IssuedSession] = None
        with self.gate.scope(tenant.id) as tx:
            session = tx.get_session(claims.sid)
            # Idle time only limits access tokens; refresh tokens live out their TTL
            problem = self._session_problem(session, claims.sub, now, check_idle=False)
            presented_hash = hash_token(refresh_token)
            if problem is None and not hmac.compare_digest(
                session.refresh_token_hash, presented_hash
            ):
                problem = "refresh_token_reused"
            user = tx.get_user(claims.sub) if problem is None else None
            if problem is None and (user is None or not user.can_login):
                problem = "user_cannot_login"
            if problem is None:
                access_token, access_claims = self.tokens.issue_access_token(
                    tenant, user, session.id
                )
                if rotate:
                    new_refresh, refresh_claims = self.tokens.issue_refresh_token(
                        tenant, user, session.id, remember_me=session.remember_me
                    )
                    refresh_expires_at = refresh_claims.expires_at
                else:
                    new_refresh, refresh_expires_at = refresh_token, session.expires_at
                swapped = tx.rotate_session_tokens(
                    session.id,
                    expected_refresh_hash=presented_hash,
                    access_token_hash=hash_token(access_token),
                    refresh_token_hash=hash_token(new_refresh),
                    expires_at=refresh_expires_at if rotate else None,
                )
                if not swapped:
                    problem = "refresh_race_lost"
                else:
                    issued = IssuedSession(
                        session=tx.get_session(session.id),
                        access_token=access_token,
                        refresh_token=new_refresh,
                        access_expires_at=access_claims.expires_at,
                        refresh_expires_at=refresh_expires_at,
                    )

        if problem is not None or issued is None:
            logger.warning(
                "refresh_rejected",
                tenant_id=claims.tenant_id,
                user_id=claims.sub,
                session_id=claims.sid,
                reason=problem,
            )
            raise SessionRevokedOrExpired()
        logger.info(
            "session_refreshed",
            tenant_id=tenant.id,
            user_id=claims.sub,
            session_id=claims.sid,
            rotated=rotate,
        )
        self._audit(
            tenant.id,
            "session_refreshed",
            user_id=claims.sub,
            resource_id=claims.sid,
            metadata={"rotated": rotate},
        )
        return issued

    async def revoke(self, tenant_id: str, session_id: str, *, user_id: Optional[str] = None) -> bool:
        """Mark a session revoked. A second call is a no-op returning False."""
        with self.gate.scope(tenant_id) as tx:
            revoked = tx.revoke_session(session_id)
        if revoked:
            logger.info("session_revoked", tenant_id=tenant_id, session_id=session_id)
            self._audit(tenant_id, "session_revoked", user_id=user_id, resource_id=session_id)
        return revoked

    async def revoke_all(
        self, tenant_id: str, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self.gate.scope(tenant_id) as tx:
            count = tx.revoke_user_sessions(user_id, except_session_id=except_session_id)
        logger.info(
            "user_sessions_revoked",
            tenant_id=tenant_id,
            user_id=user_id,
            revoked=count,
            kept_session_id=except_session_id,
        )
        if count:
            self._audit(
                tenant_id,
                "sessions_revoked",
                user_id=user_id,
                resource_id=user_id,
                metadata={"count": count, "kept_session_id": except_session_id},
            )
        return count

    async def list_sessions(
        self, tenant_id: str, user_id: str, *, current_session_id: Optional[str] = None
    ) -> List[SessionSummary]:
        now = self._now()
        with self.gate.scope(tenant_id, read_only=True) as tx:
            sessions = tx.list_user_sessions(user_id)
        return [
            SessionSummary(s, is_current=s.id == current_session_id)
            for s in sessions
            if self._session_problem(s, user_id, now) is None
        ]

    async def session_stats(self, tenant_id: str, user_id: str) -> Dict[str, Any]:
        active = await self.list_sessions(tenant_id, user_id)
        by_device = Counter((s.session.device_type or "Unknown") for s in active)
        return {"active_sessions": len(active), "by_device_type": dict(by_device)}

    async def cleanup_expired(self) -> int:
        """Delete expired and revoked sessions across all tenants."""
        with self.gate.bypass("expired_session_cleanup") as tx:
            removed = tx.delete_expired_sessions(self._now())
        logger.info("expired_sessions_deleted", count=removed)
        return removed
