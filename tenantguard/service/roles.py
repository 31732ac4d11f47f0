from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditEmitter
from tenantguard.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from tenantguard.service.permissions import PermissionService, parse_permission
from tenantguard.service.tenancy import AuthStore, TenantGate, TenantScope
from tenantguard.storage.common import SYSTEM_ROLES, generate_uuid
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import Permission, Role

logger = get_logger(__name__)

CUSTOM_ROLE_LEVEL = 10


def seed_system_roles(
    tx: TenantScope, tenant_id: str, catalog: Iterable[Permission]
) -> List[Role]:
    """Create the owner/admin/manager/user roles inside an open transaction."""
    catalog = list(catalog)
    # Bypass scopes see every tenant's roles
    current = {r.name: r for r in tx.list_roles() if r.tenant_id == tenant_id}
    created: List[Role] = []
    for definition in SYSTEM_ROLES:
        existing = current.get(definition["name"])
        if existing is not None:
            created.append(existing)
            continue
        role = tx.create_role(
            Role(
                id=generate_uuid(),
                tenant_id=tenant_id,
                name=definition["name"],
                display_name=definition["display_name"],
                description=definition["description"],
                level=definition["level"],
                is_system=True,
            )
        )
        tx.set_role_permissions(
            role.id, [p.id for p in catalog if definition["grants"](p.resource, p.action)]
        )
        created.append(role)
    return created


class RoleService:
    """Role graph mutations. Each commit is followed by a cache invalidation."""

    def __init__(
        self,
        store: AuthStore,
        gate: TenantGate,
        permissions: PermissionService,
        *,
        audit: Optional[AuditEmitter] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.permissions = permissions
        self.audit = audit

    def _audit(
        self,
        tenant_id: str,
        action: str,
        resource_id: str,
        *,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.audit is not None:
            self.audit.record(
                tenant_id,
                action,
                "role",
                user_id=actor_id,
                resource_id=resource_id,
                metadata=metadata,
            )

    def _permission_ids(self, permissions: Iterable[str]) -> List[str]:
        catalog = {f"{p.resource}.{p.action}": p.id for p in self.store.list_permissions()}
        ids = []
        for name in permissions:
            parse_permission(name)
            if name not in catalog:
                raise ValidationError("unknown permission", detail={"permission": name})
            ids.append(catalog[name])
        return ids

    @staticmethod
    def _require_invalidated(ok: bool, tenant_id: str, **ids: str) -> None:
        """The change is committed; a failed bump means cached grants may be stale."""
        if not ok:
            logger.error("role_change_cache_stale", tenant_id=tenant_id, **ids)
            raise ServerError(
                "role change saved but permission cache invalidation failed",
                detail={"tenant_id": tenant_id, **ids},
            )

    @staticmethod
    def _editable(role: Optional[Role], role_id: str) -> Role:
        if role is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        if role.is_system:
            raise ForbiddenError("system roles cannot be modified", detail={"role": role.name})
        return role

    async def provision_system_roles(self, tenant_id: str) -> List[Role]:
        catalog = self.store.list_permissions()
        with self.gate.scope(tenant_id) as tx:
            roles = seed_system_roles(tx, tenant_id, catalog)
        await self.permissions.invalidate_tenant(tenant_id)
        return roles

    async def list_roles(self, tenant_id: str) -> List[Role]:
        with self.gate.scope(tenant_id, read_only=True) as tx:
            return tx.list_roles()

    async def get_role_permissions(self, tenant_id: str, role_id: str) -> List[Permission]:
        with self.gate.scope(tenant_id, read_only=True) as tx:
            if tx.get_role(role_id) is None:
                raise NotFoundError("role not found", detail={"role_id": role_id})
            return tx.get_role_permissions(role_id)

    async def create_role(
        self,
        tenant_id: str,
        name: str,
        *,
        display_name: str = "",
        description: str = "",
        level: int = CUSTOM_ROLE_LEVEL,
        permissions: Iterable[str] = (),
        actor_id: Optional[str] = None,
    ) -> Role:
        name = (name or "").strip().lower()
        if not name:
            raise ValidationError("role name is required")
        permission_ids = self._permission_ids(permissions)
        try:
            with self.gate.scope(tenant_id) as tx:
                role = tx.create_role(
                    Role(
                        id=generate_uuid(),
                        tenant_id=tenant_id,
                        name=name,
                        display_name=display_name or name.title(),
                        description=description,
                        level=level,
                    )
                )
                tx.set_role_permissions(role.id, permission_ids)
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail={"name": name}) from exc
        logger.info("role_created", tenant_id=tenant_id, role_id=role.id, name=name)
        self._audit(tenant_id, "role_created", role.id, actor_id=actor_id, metadata={"name": name})
        return role

    async def delete_role(
        self, tenant_id: str, role_id: str, *, actor_id: Optional[str] = None
    ) -> None:
        with self.gate.scope(tenant_id) as tx:
            role = self._editable(tx.get_role(role_id), role_id)
            tx.delete_role(role_id)
        ok = await self.permissions.invalidate_role(tenant_id, role_id)
        logger.info("role_deleted", tenant_id=tenant_id, role_id=role_id)
        self._audit(tenant_id, "role_deleted", role_id, actor_id=actor_id, metadata={"name": role.name})
        self._require_invalidated(ok, tenant_id, role_id=role_id)

    async def set_role_permissions(
        self,
        tenant_id: str,
        role_id: str,
        permissions: Iterable[str],
        *,
        actor_id: Optional[str] = None,
    ) -> None:
        permissions = list(permissions)
        permission_ids = self._permission_ids(permissions)
        with self.gate.scope(tenant_id) as tx:
            self._editable(tx.get_role(role_id), role_id)
            tx.set_role_permissions(role_id, permission_ids)
        ok = await self.permissions.invalidate_role(tenant_id, role_id)
        self._audit(
            tenant_id,
            "role_permissions_updated",
            role_id,
            actor_id=actor_id,
            metadata={"permissions": sorted(permissions)},
        )
        self._require_invalidated(ok, tenant_id, role_id=role_id)

    async def grant_permission(
        self, tenant_id: str, role_id: str, permission: str, *, actor_id: Optional[str] = None
    ) -> bool:
        (permission_id,) = self._permission_ids([permission])
        with self.gate.scope(tenant_id) as tx:
            self._editable(tx.get_role(role_id), role_id)
            added = tx.add_role_permission(role_id, permission_id)
        if added:
            ok = await self.permissions.invalidate_role(tenant_id, role_id)
            self._audit(
                tenant_id,
                "role_permission_granted",
                role_id,
                actor_id=actor_id,
                metadata={"permission": permission},
            )
            self._require_invalidated(ok, tenant_id, role_id=role_id)
        return added

    async def revoke_permission(
        self, tenant_id: str, role_id: str, permission: str, *, actor_id: Optional[str] = None
    ) -> bool:
        (permission_id,) = self._permission_ids([permission])
        with self.gate.scope(tenant_id) as tx:
            self._editable(tx.get_role(role_id), role_id)
            removed = tx.remove_role_permission(role_id, permission_id)
        if removed:
            ok = await self.permissions.invalidate_role(tenant_id, role_id)
            self._audit(
                tenant_id,
                "role_permission_revoked",
                role_id,
                actor_id=actor_id,
                metadata={"permission": permission},
            )
            self._require_invalidated(ok, tenant_id, role_id=role_id)
        return removed

    async def assign_role(
        self, tenant_id: str, user_id: str, role_id: str, *, actor_id: Optional[str] = None
    ) -> bool:
        try:
            with self.gate.scope(tenant_id) as tx:
                added = tx.assign_role(user_id, role_id)
        except ConstraintViolation as exc:
            raise NotFoundError("user or role not found", detail=exc.detail) from exc
        if added:
            ok = await self.permissions.invalidate_principal(tenant_id, user_id)
            self._audit(
                tenant_id,
                "role_assigned",
                role_id,
                actor_id=actor_id,
                metadata={"user_id": user_id},
            )
            self._require_invalidated(ok, tenant_id, user_id=user_id)
        return added

    async def unassign_role(
        self, tenant_id: str, user_id: str, role_id: str, *, actor_id: Optional[str] = None
    ) -> bool:
        with self.gate.scope(tenant_id) as tx:
            removed = tx.unassign_role(user_id, role_id)
        if removed:
            ok = await self.permissions.invalidate_principal(tenant_id, user_id)
            self._audit(
                tenant_id,
                "role_unassigned",
                role_id,
                actor_id=actor_id,
                metadata={"user_id": user_id},
            )
            self._require_invalidated(ok, tenant_id, user_id=user_id)
        return removed
