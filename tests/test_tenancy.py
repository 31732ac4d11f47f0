"""Tenant gate: scoping, rollback and isolation failures."""

import asyncio
import uuid

import pytest

from tenantguard.service.tenancy import TenantGate, with_tenant_context
from tenantguard.storage.errors import ConstraintViolation, TenantIsolationViolation
from tenantguard.storage.models import User


def _user(tenant_id: str, email: str = "new@acme.test") -> User:
    return User(id=str(uuid.uuid4()), tenant_id=tenant_id, email=email, email_verified=True)


class TestScope:
    def test_scope_sees_only_its_tenant(self, runtime, acme, globex):
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            assert tx.get_user(acme.owner.id) is not None
            assert tx.get_user(globex.owner.id) is None
            assert tx.get_user_by_email("owner@globex.test") is None

    def test_active_tenant_tracks_open_gate(self, runtime, acme):
        assert TenantGate.active_tenant() is None
        with runtime.gate.scope(acme.tenant.id, read_only=True):
            assert TenantGate.active_tenant() == acme.tenant.id
        assert TenantGate.active_tenant() is None

    def test_upper_case_tenant_id_is_canonicalized(self, runtime, acme):
        with runtime.gate.scope(acme.tenant.id.upper(), read_only=True) as tx:
            assert tx.tenant_id == acme.tenant.id
            assert tx.get_user(acme.owner.id) is not None

    @pytest.mark.parametrize("bad", [None, "", "   ", "not-a-uuid", 42])
    def test_malformed_tenant_id_is_rejected(self, runtime, bad):
        with pytest.raises(TenantIsolationViolation):
            with runtime.gate.scope(bad):
                pass
        assert TenantGate.active_tenant() is None

    def test_nested_gate_is_rejected(self, runtime, acme, globex):
        with runtime.gate.scope(acme.tenant.id):
            with pytest.raises(TenantIsolationViolation):
                with runtime.gate.scope(globex.tenant.id):
                    pass
            with pytest.raises(TenantIsolationViolation):
                with runtime.gate.bypass("maintenance"):
                    pass

    def test_exception_rolls_back(self, runtime, acme):
        with pytest.raises(RuntimeError):
            with runtime.gate.scope(acme.tenant.id) as tx:
                tx.create_user(_user(acme.tenant.id))
                raise RuntimeError("boom")
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            assert tx.get_user_by_email("new@acme.test") is None

    def test_abort_rolls_back_without_raising(self, runtime, acme):
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.create_user(_user(acme.tenant.id))
            tx.abort()
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            assert tx.get_user_by_email("new@acme.test") is None

    def test_clean_exit_commits(self, runtime, acme):
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.create_user(_user(acme.tenant.id))
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            assert tx.get_user_by_email("new@acme.test") is not None

    def test_read_only_scope_rejects_writes(self, runtime, acme):
        with pytest.raises(ConstraintViolation):
            with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
                tx.create_user(_user(acme.tenant.id))

    def test_cross_tenant_write_is_a_violation(self, runtime, acme, globex):
        with pytest.raises(TenantIsolationViolation):
            with runtime.gate.scope(acme.tenant.id) as tx:
                tx.create_user(_user(globex.tenant.id))

    def test_handle_is_unusable_after_release(self, runtime, acme):
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            pass
        with pytest.raises(TenantIsolationViolation):
            tx.get_user(acme.owner.id)

    def test_with_tenant_context_helper(self, store, acme):
        with with_tenant_context(store, acme.tenant.id, read_only=True) as tx:
            assert tx.get_user(acme.owner.id).email == "owner@acme.test"


class TestBypass:
    def test_bypass_requires_reason(self, runtime):
        with pytest.raises(ValueError):
            with runtime.gate.bypass(""):
                pass

    def test_bypass_sees_every_tenant(self, runtime, acme, globex):
        with runtime.gate.bypass("test_inspection") as tx:
            assert tx.get_user(acme.owner.id) is not None
            assert tx.get_user(globex.owner.id) is not None
        assert TenantGate.active_tenant() is None


async def test_cancellation_rolls_back(runtime, acme):
    started = asyncio.Event()

    async def work():
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.create_user(_user(acme.tenant.id))
            started.set()
            await asyncio.sleep(30)

    task = asyncio.create_task(work())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
        assert tx.get_user_by_email("new@acme.test") is None


def test_role_assignment_across_tenants_is_rejected(runtime, acme, globex):
    with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
        acme_owner_role = tx.get_role_by_name("owner")
    with pytest.raises(ConstraintViolation):
        with runtime.gate.bypass("test_inspection") as tx:
            tx.assign_role(globex.owner.id, acme_owner_role.id)
    assert (acme.tenant.id, globex.owner.id, acme_owner_role.id) not in runtime.store.user_roles
