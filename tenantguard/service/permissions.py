from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.errors import PermissionDenied, ValidationError
from tenantguard.service.tenancy import TenantGate
from tenantguard.storage.common import validate_tenant_id
from tenantguard.storage.errors import StorageUnavailable
from tenantguard.storage.models import Grant, ResolvedPermissions
from tenantguard.storage.redis_cache import (
    role_generation_key,
    tenant_generation_key,
    user_generation_key,
)

logger = get_logger(__name__)


def parse_permission(permission: str) -> Tuple[str, str]:
    """Split ``"resource.action"``; the action may be ``*``."""
    resource, sep, action = (permission or "").partition(".")
    if not sep or not resource or not action:
        raise ValidationError("permission must look like resource.action", detail={"permission": permission})
    return resource, action


class PermissionService:
    """Resolves ``resource.action`` grants with a cache-aside, generation-checked cache.

    Each cached entry records the tenant, principal and per-role generation
    counters observed *before* the store was read. A hit is trusted only if
    every one of those counters is unchanged, so any invalidation that
    happens during or after population turns the entry into a miss.
    """

    def __init__(self, gate: TenantGate, cache, settings: Settings) -> None:
        self.gate = gate
        self.cache = cache
        self.settings = settings

    # -- cache helpers -----------------------------------------------------

    async def _generations(self, keys: List[str]) -> Optional[Dict[str, int]]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get_generations(keys)
        except Exception as exc:
            logger.warning("permission_cache_unavailable", op="get_generations", error=str(exc))
            return None

    async def _cached(self, tenant_id: str, user_id: str) -> Optional[ResolvedPermissions]:
        if self.cache is None:
            return None
        try:
            entry = await self.cache.get_permission_entry(tenant_id, user_id)
        except Exception as exc:
            logger.warning("permission_cache_unavailable", op="get_entry", error=str(exc))
            return None
        if not entry:
            return None
        try:
            recorded: Dict[str, int] = {k: int(v) for k, v in entry["generations"].items()}
            grants = frozenset(Grant(r, a) for r, a in entry["grants"])
            role_ids = frozenset(entry["role_ids"])
            role_names = frozenset(entry.get("role_names") or ())
        except (KeyError, TypeError, ValueError):
            logger.warning("permission_cache_entry_corrupt", tenant_id=tenant_id, user_id=user_id)
            return None
        required = {tenant_generation_key(tenant_id), user_generation_key(tenant_id, user_id)}
        required.update(role_generation_key(tenant_id, r) for r in role_ids)
        if not required.issubset(recorded):
            return None
        current = await self._generations(sorted(recorded))
        if current is None or any(current.get(k, 0) != v for k, v in recorded.items()):
            return None
        return ResolvedPermissions(tenant_id, user_id, grants, role_ids, role_names)

    async def _store_entry(
        self, resolved: ResolvedPermissions, generations: Dict[str, int]
    ) -> None:
        payload = {
            "grants": sorted([g.resource, g.action] for g in resolved.grants),
            "role_ids": sorted(resolved.role_ids),
            "role_names": sorted(resolved.role_names),
            "generations": generations,
        }
        try:
            await self.cache.set_permission_entry(
                resolved.tenant_id,
                resolved.user_id,
                payload,
                self.settings.permission_cache_ttl_seconds,
            )
        except Exception as exc:
            logger.warning("permission_cache_unavailable", op="set_entry", error=str(exc))

    # -- resolution --------------------------------------------------------

    async def resolve(self, tenant_id: str, user_id: str) -> ResolvedPermissions:
        """Grants and roles of a principal within ``tenant_id``.

        Raises ``StorageUnavailable`` when the role store cannot be read.
        """
        tenant_id = validate_tenant_id(tenant_id)
        cached = await self._cached(tenant_id, user_id)
        if cached is not None:
            return cached

        # Snapshot before every store read
        generations = await self._generations(
            [tenant_generation_key(tenant_id), user_generation_key(tenant_id, user_id)]
        )
        with self.gate.scope(tenant_id, read_only=True) as tx:
            held = frozenset(role.id for role in tx.get_user_roles(user_id))
        if generations is not None and held:
            role_generations = await self._generations(
                [role_generation_key(tenant_id, r) for r in sorted(held)]
            )
            generations = None if role_generations is None else {**generations, **role_generations}
        with self.gate.scope(tenant_id, read_only=True) as tx:
            rows = tx.resolve_user_grants(user_id)

        role_ids = frozenset(row[0] for row in rows)
        resolved = ResolvedPermissions(
            tenant_id=tenant_id,
            user_id=user_id,
            grants=frozenset(Grant(res, act) for _, _, res, act in rows if res and act),
            role_ids=role_ids,
            role_names=frozenset(row[1] for row in rows),
        )
        # Role set moved between the two reads: serve the result, skip caching
        if generations is not None and role_ids == held:
            await self._store_entry(resolved, generations)
        return resolved

    async def resolve_permissions(self, tenant_id: str, user_id: str) -> FrozenSet[Grant]:
        return (await self.resolve(tenant_id, user_id)).grants

    async def _resolve_or_deny(
        self, tenant_id: str, user_id: str
    ) -> Optional[ResolvedPermissions]:
        try:
            return await self.resolve(tenant_id, user_id)
        except StorageUnavailable as exc:
            logger.warning(
                "permission_check_denied",
                tenant_id=str(tenant_id),
                user_id=user_id,
                reason="store_unavailable",
                error=str(exc),
            )
            return None

    async def has_permission(
        self, tenant_id: str, user_id: str, resource: str, action: str
    ) -> bool:
        resolved = await self._resolve_or_deny(tenant_id, user_id)
        if resolved is None:
            return False
        return any(grant.matches(resource, action) for grant in resolved.grants)

    async def has_any_permission(
        self, tenant_id: str, user_id: str, permissions: Iterable[str]
    ) -> bool:
        wanted = [parse_permission(p) for p in permissions]
        resolved = await self._resolve_or_deny(tenant_id, user_id)
        if resolved is None:
            return False
        return any(g.matches(r, a) for r, a in wanted for g in resolved.grants)

    async def has_all_permissions(
        self, tenant_id: str, user_id: str, permissions: Iterable[str]
    ) -> bool:
        wanted = [parse_permission(p) for p in permissions]
        resolved = await self._resolve_or_deny(tenant_id, user_id)
        if resolved is None:
            return False
        return all(any(g.matches(r, a) for g in resolved.grants) for r, a in wanted)

    async def require_permission(
        self, tenant_id: str, user_id: str, resource: str, action: str
    ) -> None:
        if not await self.has_permission(tenant_id, user_id, resource, action):
            logger.warning(
                "permission_denied",
                tenant_id=str(tenant_id),
                user_id=user_id,
                permission=f"{resource}.{action}",
            )
            raise PermissionDenied(
                "insufficient permissions", detail={"permission": f"{resource}.{action}"}
            )

    async def user_role_names(self, tenant_id: str, user_id: str) -> FrozenSet[str]:
        resolved = await self._resolve_or_deny(tenant_id, user_id)
        return resolved.role_names if resolved else frozenset()

    async def has_role(self, tenant_id: str, user_id: str, role_name: str) -> bool:
        return role_name in await self.user_role_names(tenant_id, user_id)

    async def is_owner(self, tenant_id: str, user_id: str) -> bool:
        return await self.has_role(tenant_id, user_id, "owner")

    async def is_admin(self, tenant_id: str, user_id: str) -> bool:
        names = await self.user_role_names(tenant_id, user_id)
        return bool(names & {"owner", "admin"})

    # -- invalidation ------------------------------------------------------

    async def _bump(self, key: str, attempts: int = 2) -> bool:
        if self.cache is None:
            return True
        for attempt in range(1, attempts + 1):
            try:
                await self.cache.bump_generation(key)
                return True
            except Exception as exc:
                logger.error(
                    "permission_cache_invalidation_failed",
                    key=key,
                    attempt=attempt,
                    error=str(exc),
                )
        return False

    async def invalidate_role(self, tenant_id: str, role_id: str) -> bool:
        """Every principal holding ``role_id`` misses on its next check."""
        return await self._bump(role_generation_key(validate_tenant_id(tenant_id), role_id))

    async def invalidate_principal(self, tenant_id: str, user_id: str) -> bool:
        tenant_id = validate_tenant_id(tenant_id)
        ok = await self._bump(user_generation_key(tenant_id, user_id))
        if self.cache is not None:
            try:
                await self.cache.delete_permission_entry(tenant_id, user_id)
            except Exception as exc:
                logger.warning("permission_cache_unavailable", op="delete_entry", error=str(exc))
        return ok

    async def invalidate_tenant(self, tenant_id: str) -> bool:
        return await self._bump(tenant_generation_key(validate_tenant_id(tenant_id)))

    async def invalidate_permission_cache(
        self,
        tenant_id: str,
        *,
        role_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """Invalidate by role, by principal, or the whole tenant when neither is given."""
        ok = True
        if role_id:
            ok = await self.invalidate_role(tenant_id, role_id) and ok
        if user_id:
            ok = await self.invalidate_principal(tenant_id, user_id) and ok
        if not role_id and not user_id:
            ok = await self.invalidate_tenant(tenant_id)
        logger.info(
            "permission_cache_invalidated",
            tenant_id=str(tenant_id),
            role_id=role_id,
            user_id=user_id,
            ok=ok,
        )
        return ok
