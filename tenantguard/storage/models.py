from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


TENANT_STATUSES = ("pending_verification", "active", "suspended", "canceled")
USER_STATUSES = ("active", "suspended", "deactivated", "pending")


@dataclass
class Tenant:
    id: str
    slug: str
    company_name: str
    email: str
    status: str = "pending_verification"
    plan_tier: str = "free"
    created_at: datetime = field(default_factory=utcnow)
    activated_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    settings: Dict | None = None

    @property
    def can_access(self) -> bool:
        return self.status == "active"


@dataclass
class User:
    id: str
    tenant_id: str
    email: str
    password_hash: str = ""
    first_name: str = ""
    last_name: str = ""
    status: str = "active"
    email_verified: bool = False
    two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def can_login(self) -> bool:
        return self.status == "active" and self.email_verified


@dataclass
class TwoFactorConfig:
    """Second-factor material for a user.

    Stores hold ``secret`` and each backup code encrypted; instances handed
    to services carry plaintext values.
    """

    user_id: str
    tenant_id: str
    secret: str
    backup_codes: List[str] = field(default_factory=list)
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    last_used_step: int = 0


@dataclass
class Session:
    id: str
    tenant_id: str
    user_id: str
    access_token_hash: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    remember_me: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        tenant_id: str,
        user_id: str,
        *,
        access_token_hash: str,
        refresh_token_hash: str,
        ttl: timedelta,
        session_id: Optional[str] = None,
        remember_me: bool = False,
        device: Optional["DeviceInfo"] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        device = device or DeviceInfo()
        return cls(
            id=session_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            access_token_hash=access_token_hash,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + ttl,
            last_activity_at=now,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            country_code=device.country_code,
            city=device.city,
            remember_me=remember_me,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and self.expires_at > now

    def is_idle(self, limit: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - self.last_activity_at > limit


@dataclass
class DeviceInfo:
    """Client device metadata recorded on sessions; never used for authorization."""

    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    accept_language: Optional[str] = None


@dataclass(frozen=True)
class Grant:
    resource: str
    action: str

    def matches(self, resource: str, action: str) -> bool:
        return self.resource == resource and (
            self.action == action or self.action == "*"
        )

    def __str__(self) -> str:
        return f"{self.resource}.{self.action}"


@dataclass
class Permission:
    id: str
    resource: str
    action: str
    display_name: str = ""
    description: str = ""
    category: str = ""

    @property
    def grant(self) -> Grant:
        return Grant(self.resource, self.action)


@dataclass
class Role:
    id: str
    tenant_id: str
    name: str
    display_name: str = ""
    description: str = ""
    # Ordering/UI metadata only; roles do not inherit permissions
    level: int = 0
    parent_role_id: Optional[str] = None
    is_system: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ResolvedPermissions:
    """Grants for one principal plus the roles they came from."""

    tenant_id: str
    user_id: str
    grants: FrozenSet[Grant]
    role_ids: FrozenSet[str]
    role_names: FrozenSet[str] = frozenset()


@dataclass
class AuditEvent:
    tenant_id: Optional[str]
    action: str
    resource_type: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    status: str = "success"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
