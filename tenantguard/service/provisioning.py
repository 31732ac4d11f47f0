from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from tenantguard.config import Settings
from tenantguard.logging import get_logger, redact_email
from tenantguard.service.audit import AuditEmitter
from tenantguard.service.credentials import CredentialVerifier, check_password_strength
from tenantguard.service.email import Notifier
from tenantguard.service.errors import (
    AuthenticationFailed,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from tenantguard.service.permissions import PermissionService
from tenantguard.service.roles import seed_system_roles
from tenantguard.service.tenancy import AuthStore, TenantGate
from tenantguard.service.tokens import hash_token
from tenantguard.storage.common import generate_uuid, normalize_email
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import Tenant, User

logger = get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,48}[a-z0-9])$")
RESERVED_SLUGS = frozenset({"admin", "api", "app", "auth", "www", "static", "system"})


def validate_slug(slug: str) -> str:
    slug = (slug or "").strip().lower()
    if not SLUG_PATTERN.match(slug) or "--" in slug:
        raise ValidationError(
            "slug must be 3-50 lowercase letters, digits or single hyphens",
            detail={"slug": slug},
        )
    if slug in RESERVED_SLUGS:
        raise ValidationError("slug is reserved", detail={"slug": slug})
    return slug


def slug_from_company(company_name: str) -> str:
    """Derive a slug candidate from a display name."""
    base = re.sub(r"[^a-z0-9]+", "-", (company_name or "").lower()).strip("-")
    base = base[:50].rstrip("-")
    if len(base) < 3 or base in RESERVED_SLUGS:
        base = f"{base}-org".lstrip("-")
    return base


@dataclass
class ProvisionedTenant:
    tenant: Tenant
    owner: User


class ProvisioningService:
    """Tenant lifecycle: sign-up and verification, operator provisioning,
    members, suspension and reactivation."""

    def __init__(
        self,
        store: AuthStore,
        gate: TenantGate,
        verifier: CredentialVerifier,
        permissions: PermissionService,
        settings: Settings,
        *,
        cache=None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditEmitter] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.verifier = verifier
        self.permissions = permissions
        self.settings = settings
        self.cache = cache
        self.notifier = notifier
        self.audit = audit

    def _audit(self, tenant_id: str, action: str, **kwargs) -> None:
        if self.audit is not None:
            self.audit.record(tenant_id, action, "tenant", resource_id=tenant_id, **kwargs)

    async def register_tenant(
        self,
        *,
        company_name: str,
        owner_email: str,
        owner_password: str,
        slug: Optional[str] = None,
        owner_first_name: str = "",
        owner_last_name: str = "",
        plan_tier: str = "free",
    ) -> ProvisionedTenant:
        """Self-service sign-up.

        Creates a ``pending_verification`` tenant and a pending, unverified
        owner without roles, then mails a single-use verification link. Roles
        are seeded and the owner activated only by ``verify_tenant_email``.
        """
        if not company_name or not company_name.strip():
            raise ValidationError("company name is required")
        owner_email = normalize_email(owner_email)
        if "@" not in owner_email:
            raise ValidationError("owner email is invalid")
        check_password_strength(owner_password)

        if slug:
            candidates = [validate_slug(slug)]
        else:
            base = validate_slug(slug_from_company(company_name))
            candidates = [base] + [f"{base[:46].rstrip('-')}-{n}" for n in range(2, 10)]
        tenant = None
        for candidate in candidates:
            try:
                tenant = self.store.create_tenant(
                    Tenant(
                        id=generate_uuid(),
                        slug=candidate,
                        company_name=company_name.strip(),
                        email=owner_email,
                        status="pending_verification",
                        plan_tier=plan_tier,
                    )
                )
                break
            except ConstraintViolation:
                logger.info("tenant_slug_taken", slug=candidate)
        if tenant is None:
            raise ConflictError("tenant slug already taken", detail={"slug": candidates[0]})

        password_hash = self.verifier.hash_password(owner_password)
        with self.gate.scope(tenant.id) as tx:
            owner = tx.create_user(
                User(
                    id=generate_uuid(),
                    tenant_id=tenant.id,
                    email=owner_email,
                    password_hash=password_hash,
                    first_name=owner_first_name,
                    last_name=owner_last_name,
                    status="pending",
                    email_verified=False,
                )
            )

        await self._issue_verification(tenant, owner)
        logger.info(
            "tenant_registered",
            tenant_id=tenant.id,
            slug=tenant.slug,
            owner_id=owner.id,
            owner=redact_email(owner_email),
        )
        self._audit(tenant.id, "tenant_registered", user_id=owner.id, metadata={"slug": tenant.slug})
        return ProvisionedTenant(tenant=tenant, owner=owner)

    async def _issue_verification(self, tenant: Tenant, owner: User) -> None:
        if self.cache is None:
            raise ServerError("email verification unavailable")
        token = secrets.token_urlsafe(32)
        ttl_hours = self.settings.verification_token_ttl_hours
        try:
            await self.cache.set_email_verification(
                hash_token(token),
                {"tenant_id": tenant.id, "user_id": owner.id},
                ttl_hours * 3600,
            )
        except Exception as exc:
            logger.error("email_verification_store_failed", tenant_id=tenant.id, error=str(exc))
            raise ServerError("email verification unavailable") from exc
        if self.notifier is not None:
            await asyncio.to_thread(
                self.notifier.send_verification,
                owner.email,
                token,
                tenant_slug=tenant.slug,
                expires_hours=ttl_hours,
            )

    async def resend_verification(self, tenant_id: str) -> bool:
        """Issue a fresh link; False when the tenant no longer awaits verification."""
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found", detail={"tenant_id": tenant_id})
        if tenant.status != "pending_verification":
            return False
        with self.gate.scope(tenant.id, read_only=True) as tx:
            owner = tx.get_user_by_email(tenant.email)
        if owner is None:
            raise NotFoundError("tenant owner not found", detail={"tenant_id": tenant.id})
        await self._issue_verification(tenant, owner)
        logger.info("tenant_verification_resent", tenant_id=tenant.id)
        return True

    async def verify_tenant_email(self, token: str) -> ProvisionedTenant:
        """Consume a verification link: seed roles, activate the owner and the tenant."""
        if self.cache is None:
            raise ServerError("email verification unavailable")
        try:
            record = await self.cache.pop_email_verification(hash_token(token or ""))
        except Exception as exc:
            logger.error("email_verification_lookup_failed", error=str(exc))
            raise ServerError("email verification unavailable") from exc
        if not record:
            logger.warning("email_verification_invalid_token")
            raise AuthenticationFailed("invalid or expired verification token")

        tenant = self.store.get_tenant(record.get("tenant_id", ""))
        if tenant is None:
            raise AuthenticationFailed("invalid or expired verification token")
        if tenant.status != "pending_verification":
            raise ConflictError("tenant is not awaiting verification", detail={"status": tenant.status})

        user_id = record.get("user_id", "")
        catalog = self.store.list_permissions()
        with self.gate.scope(tenant.id) as tx:
            owner = tx.get_user(user_id)
            if owner is not None:
                roles = {role.name: role for role in seed_system_roles(tx, tenant.id, catalog)}
                tx.set_email_verified(owner.id, True)
                owner = tx.update_user_status(owner.id, "active") or owner
                tx.assign_role(owner.id, roles["owner"].id)
        if owner is None:
            logger.warning("email_verification_user_missing", tenant_id=tenant.id, user_id=user_id)
            raise AuthenticationFailed("invalid or expired verification token")

        tenant = self.store.update_tenant_status(tenant.id, "active") or tenant
        await self.permissions.invalidate_principal(tenant.id, owner.id)
        logger.info("tenant_verified", tenant_id=tenant.id, owner_id=owner.id)
        self._audit(tenant.id, "tenant_email_verified", user_id=owner.id)
        return ProvisionedTenant(tenant=tenant, owner=owner)

    async def provision_tenant(
        self,
        *,
        company_name: str,
        slug: str,
        owner_email: str,
        owner_password: str,
        owner_first_name: str = "",
        owner_last_name: str = "",
        plan_tier: str = "free",
    ) -> ProvisionedTenant:
        """Create an active tenant with system roles and an ``owner`` principal.

        The tenant row is written first with ``pending_verification`` and only
        flipped to ``active`` once the owner exists, so a failure part way
        leaves a tenant nobody can log into.
        """
        slug = validate_slug(slug)
        owner_email = normalize_email(owner_email)
        if not company_name or not company_name.strip():
            raise ValidationError("company name is required")
        if "@" not in owner_email:
            raise ValidationError("owner email is invalid")
        check_password_strength(owner_password)

        try:
            tenant = self.store.create_tenant(
                Tenant(
                    id=generate_uuid(),
                    slug=slug,
                    company_name=company_name.strip(),
                    email=owner_email,
                    status="pending_verification",
                    plan_tier=plan_tier,
                )
            )
        except ConstraintViolation as exc:
            raise ConflictError("tenant slug already taken", detail={"slug": slug}) from exc

        catalog = self.store.list_permissions()
        password_hash = self.verifier.hash_password(owner_password)
        with self.gate.scope(tenant.id) as tx:
            roles = {role.name: role for role in seed_system_roles(tx, tenant.id, catalog)}
            owner = tx.create_user(
                User(
                    id=generate_uuid(),
                    tenant_id=tenant.id,
                    email=owner_email,
                    password_hash=password_hash,
                    first_name=owner_first_name,
                    last_name=owner_last_name,
                    status="active",
                    email_verified=True,
                )
            )
            tx.assign_role(owner.id, roles["owner"].id)

        tenant = self.store.update_tenant_status(tenant.id, "active") or tenant
        logger.info(
            "tenant_provisioned",
            tenant_id=tenant.id,
            slug=slug,
            owner_id=owner.id,
            owner=redact_email(owner_email),
        )
        self._audit(tenant.id, "tenant_provisioned", user_id=owner.id, metadata={"slug": slug})
        return ProvisionedTenant(tenant=tenant, owner=owner)

    async def create_member(
        self,
        tenant_id: str,
        email: str,
        password: str,
        *,
        role: str = "user",
        first_name: str = "",
        last_name: str = "",
        email_verified: bool = True,
        actor_id: Optional[str] = None,
    ) -> User:
        """Add a principal to an existing tenant and assign it one role by name."""
        email = normalize_email(email)
        check_password_strength(password)
        password_hash = self.verifier.hash_password(password)
        try:
            with self.gate.scope(tenant_id) as tx:
                target = tx.get_role_by_name(role)
                if target is None:
                    raise NotFoundError("role not found", detail={"role": role})
                user = tx.create_user(
                    User(
                        id=generate_uuid(),
                        tenant_id=tenant_id,
                        email=email,
                        password_hash=password_hash,
                        first_name=first_name,
                        last_name=last_name,
                        status="active",
                        email_verified=email_verified,
                    )
                )
                tx.assign_role(user.id, target.id)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"email": redact_email(email)}) from exc
        await self.permissions.invalidate_principal(tenant_id, user.id)
        logger.info("member_created", tenant_id=tenant_id, user_id=user.id, role=role)
        if self.audit is not None:
            self.audit.record(
                tenant_id,
                "user_created",
                "user",
                user_id=actor_id,
                resource_id=user.id,
                metadata={"role": role},
            )
        return user

    async def suspend_tenant(self, tenant_id: str, *, reason: str = "") -> Tenant:
        """Suspend the tenant, revoke every session and drop cached permissions."""
        tenant = self.store.update_tenant_status(tenant_id, "suspended")
        if tenant is None:
            raise NotFoundError("tenant not found", detail={"tenant_id": tenant_id})
        with self.gate.scope(tenant.id) as tx:
            revoked = tx.revoke_tenant_sessions()
        invalidated = await self.permissions.invalidate_tenant(tenant.id)
        logger.warning("tenant_suspended", tenant_id=tenant.id, sessions_revoked=revoked, reason=reason)
        self._audit(tenant.id, "tenant_suspended", metadata={"reason": reason, "sessions_revoked": revoked})
        if not invalidated:
            raise ServerError(
                "tenant suspended but permission cache invalidation failed",
                detail={"tenant_id": tenant.id},
            )
        return tenant

    async def activate_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.update_tenant_status(tenant_id, "active")
        if tenant is None:
            raise NotFoundError("tenant not found", detail={"tenant_id": tenant_id})
        await self.permissions.invalidate_tenant(tenant.id)
        logger.info("tenant_activated", tenant_id=tenant.id)
        self._audit(tenant.id, "tenant_activated")
        return tenant
