"""Permission resolution and the generation-checked cache."""

from unittest.mock import AsyncMock, patch

import pytest

from tenantguard.service.errors import PermissionDenied, ValidationError
from tenantguard.service.permissions import PermissionService, parse_permission
from tenantguard.storage.errors import StorageUnavailable
from tenantguard.storage.redis_cache import permission_entry_key, user_generation_key


def _role_id(runtime, tenant_id, name):
    with runtime.gate.scope(tenant_id, read_only=True) as tx:
        return tx.get_role_by_name(name).id


def test_parse_permission():
    assert parse_permission("users.view") == ("users", "view")
    assert parse_permission("users.*") == ("users", "*")
    for bad in ["", "users", ".view", "users."]:
        with pytest.raises(ValidationError):
            parse_permission(bad)


class TestSystemRoles:
    async def test_owner_has_everything(self, runtime, acme):
        for resource, action in [
            ("users", "delete"),
            ("roles", "assign"),
            ("settings", "edit"),
            ("security", "manage_sessions"),
        ]:
            assert await runtime.permissions.has_permission(
                acme.tenant.id, acme.owner.id, resource, action
            )
        assert await runtime.permissions.is_owner(acme.tenant.id, acme.owner.id)

    async def test_user_role_is_view_only(self, runtime, acme):
        check = runtime.permissions.has_permission
        assert await check(acme.tenant.id, acme.member.id, "users", "view")
        assert await check(acme.tenant.id, acme.member.id, "settings", "view")
        assert not await check(acme.tenant.id, acme.member.id, "users", "edit")
        assert not await check(acme.tenant.id, acme.member.id, "security", "view_logs")
        assert not await runtime.permissions.is_admin(acme.tenant.id, acme.member.id)

    async def test_admin_cannot_delete(self, runtime, acme):
        admin_role = _role_id(runtime, acme.tenant.id, "admin")
        await runtime.roles.assign_role(acme.tenant.id, acme.member.id, admin_role)
        check = runtime.permissions.has_permission
        assert await check(acme.tenant.id, acme.member.id, "users", "create")
        assert await check(acme.tenant.id, acme.member.id, "roles", "assign")
        assert not await check(acme.tenant.id, acme.member.id, "users", "delete")
        assert not await check(acme.tenant.id, acme.member.id, "security", "view_sessions")
        assert await runtime.permissions.is_admin(acme.tenant.id, acme.member.id)

    async def test_unknown_principal_has_nothing(self, runtime, acme):
        assert not await runtime.permissions.has_permission(
            acme.tenant.id, "no-such-user", "users", "view"
        )


class TestTenantIsolation:
    async def test_grants_do_not_cross_tenants(self, runtime, acme, globex):
        # Warm the cache in the home tenant first
        assert await runtime.permissions.has_permission(acme.tenant.id, acme.owner.id, "users", "view")
        assert not await runtime.permissions.has_permission(
            globex.tenant.id, acme.owner.id, "users", "view"
        )
        resolved = await runtime.permissions.resolve(globex.tenant.id, acme.owner.id)
        assert resolved.grants == frozenset()

    async def test_cache_entries_are_keyed_by_tenant(self, runtime, acme, globex):
        await runtime.permissions.resolve(acme.tenant.id, acme.owner.id)
        assert await runtime.cache.get_permission_entry(acme.tenant.id, acme.owner.id)
        assert await runtime.cache.get_permission_entry(globex.tenant.id, acme.owner.id) is None
        assert permission_entry_key(acme.tenant.id, "u") != permission_entry_key(globex.tenant.id, "u")


class TestCacheInvalidation:
    async def _custom_role(self, runtime, acme, permissions):
        role = await runtime.roles.create_role(acme.tenant.id, "auditor", permissions=permissions)
        await runtime.roles.assign_role(acme.tenant.id, acme.member.id, role.id)
        return role

    async def test_revoked_permission_is_seen_on_next_check(self, runtime, acme):
        role = await self._custom_role(runtime, acme, ["users.view", "users.delete"])
        check = runtime.permissions.has_permission
        assert await check(acme.tenant.id, acme.member.id, "users", "delete")
        assert await runtime.cache.get_permission_entry(acme.tenant.id, acme.member.id)

        await runtime.roles.revoke_permission(acme.tenant.id, role.id, "users.delete")
        assert not await check(acme.tenant.id, acme.member.id, "users", "delete")

    async def test_granted_permission_is_seen_on_next_check(self, runtime, acme):
        role = await self._custom_role(runtime, acme, ["users.view"])
        check = runtime.permissions.has_permission
        assert not await check(acme.tenant.id, acme.member.id, "security", "view_logs")
        await runtime.roles.grant_permission(acme.tenant.id, role.id, "security.view_logs")
        assert await check(acme.tenant.id, acme.member.id, "security", "view_logs")

    async def test_role_edit_leaves_other_principals_cached(self, runtime, acme):
        role = await self._custom_role(runtime, acme, ["users.view"])
        await runtime.permissions.resolve(acme.tenant.id, acme.owner.id)
        await runtime.permissions.resolve(acme.tenant.id, acme.member.id)

        await runtime.roles.grant_permission(acme.tenant.id, role.id, "users.edit")
        with patch.object(runtime.gate, "scope", wraps=runtime.gate.scope) as scope:
            await runtime.permissions.resolve(acme.tenant.id, acme.owner.id)
            scope.assert_not_called()
            await runtime.permissions.resolve(acme.tenant.id, acme.member.id)
            assert scope.called

    async def test_assign_and_unassign(self, runtime, acme):
        manager = _role_id(runtime, acme.tenant.id, "manager")
        check = runtime.permissions.has_permission
        assert not await check(acme.tenant.id, acme.member.id, "users", "edit")
        assert await runtime.roles.assign_role(acme.tenant.id, acme.member.id, manager)
        assert await check(acme.tenant.id, acme.member.id, "users", "edit")
        assert await runtime.roles.unassign_role(acme.tenant.id, acme.member.id, manager)
        assert not await check(acme.tenant.id, acme.member.id, "users", "edit")

    async def test_deleted_role_drops_grants(self, runtime, acme):
        role = await self._custom_role(runtime, acme, ["security.view_logs"])
        check = runtime.permissions.has_permission
        assert await check(acme.tenant.id, acme.member.id, "security", "view_logs")
        await runtime.roles.delete_role(acme.tenant.id, role.id)
        assert not await check(acme.tenant.id, acme.member.id, "security", "view_logs")

    async def test_tenant_invalidation_forces_miss(self, runtime, acme):
        await runtime.permissions.resolve(acme.tenant.id, acme.owner.id)
        assert await runtime.permissions.invalidate_permission_cache(acme.tenant.id)
        with patch.object(runtime.gate, "scope", wraps=runtime.gate.scope) as scope:
            await runtime.permissions.resolve(acme.tenant.id, acme.owner.id)
            assert scope.called

    async def test_entry_written_after_concurrent_bump_is_ignored(self, runtime, acme):
        real_scope = runtime.gate.scope
        key = user_generation_key(acme.tenant.id, acme.member.id)
        bumped = []

        def scope_then_bump(*args, **kwargs):
            # An assignment lands between the generation snapshot and the store read
            if not bumped:
                bumped.append(True)
                current = runtime.cache._values.get(key, (0, None))[0]
                runtime.cache._values[key] = (int(current) + 1, None)
            return real_scope(*args, **kwargs)

        with patch.object(runtime.gate, "scope", side_effect=scope_then_bump):
            await runtime.permissions.resolve(acme.tenant.id, acme.member.id)
        assert await runtime.permissions._cached(acme.tenant.id, acme.member.id) is None


class TestDegradedDependencies:
    async def test_cache_failure_still_resolves(self, runtime, acme):
        broken = AsyncMock()
        broken.get_permission_entry.side_effect = ConnectionError("down")
        broken.get_generations.side_effect = ConnectionError("down")
        broken.set_permission_entry.side_effect = ConnectionError("down")
        service = PermissionService(runtime.gate, broken, runtime.settings)
        assert await service.has_permission(acme.tenant.id, acme.owner.id, "users", "delete")
        assert not await service.has_permission(acme.tenant.id, acme.member.id, "users", "delete")

    async def test_no_cache_resolves_from_store(self, runtime, acme):
        service = PermissionService(runtime.gate, None, runtime.settings)
        assert await service.has_permission(acme.tenant.id, acme.owner.id, "users", "delete")
        assert await service.invalidate_permission_cache(acme.tenant.id)

    async def test_store_unavailable_denies(self, runtime, acme):
        with patch.object(
            runtime.permissions, "resolve", AsyncMock(side_effect=StorageUnavailable("db down"))
        ):
            assert not await runtime.permissions.has_permission(
                acme.tenant.id, acme.owner.id, "users", "view"
            )
            with pytest.raises(PermissionDenied):
                await runtime.permissions.require_permission(
                    acme.tenant.id, acme.owner.id, "users", "view"
                )

    async def test_failed_invalidation_reports_false(self, runtime, acme):
        runtime.permissions.cache.bump_generation = AsyncMock(side_effect=ConnectionError("down"))
        assert not await runtime.permissions.invalidate_tenant(acme.tenant.id)

    async def test_invalidation_retries_once(self, runtime, acme):
        bump = AsyncMock(side_effect=[ConnectionError("blip"), 1])
        runtime.permissions.cache.bump_generation = bump
        assert await runtime.permissions.invalidate_role(acme.tenant.id, "role-1")
        assert bump.await_count == 2


class TestHelpers:
    async def test_any_and_all(self, runtime, acme):
        perms = runtime.permissions
        assert await perms.has_any_permission(
            acme.tenant.id, acme.member.id, ["users.edit", "users.view"]
        )
        assert not await perms.has_all_permissions(
            acme.tenant.id, acme.member.id, ["users.edit", "users.view"]
        )
        assert await perms.has_all_permissions(
            acme.tenant.id, acme.owner.id, ["users.edit", "roles.delete"]
        )
        with pytest.raises(ValidationError):
            await perms.has_any_permission(acme.tenant.id, acme.member.id, ["bogus"])

    async def test_require_permission(self, runtime, acme):
        await runtime.permissions.require_permission(acme.tenant.id, acme.owner.id, "users", "delete")
        with pytest.raises(PermissionDenied) as excinfo:
            await runtime.permissions.require_permission(
                acme.tenant.id, acme.member.id, "users", "delete"
            )
        assert excinfo.value.status_code == 403
        assert excinfo.value.detail == {"permission": "users.delete"}

    async def test_role_names(self, runtime, acme):
        assert await runtime.permissions.user_role_names(acme.tenant.id, acme.member.id) == {"user"}
        assert await runtime.permissions.has_role(acme.tenant.id, acme.owner.id, "owner")
