"""Primary credential verification."""

from unittest.mock import patch

import pytest

from tenantguard.service.credentials import check_password_strength, ensure_tenant_active
from tenantguard.service.errors import (
    AuthenticationFailed,
    RateLimited,
    TenantSuspended,
    TenantUnverified,
    ValidationError,
)
from tenantguard.storage.models import Tenant


class TestPasswordStrength:
    @pytest.mark.parametrize("password", ["Correct-Horse-42!", "abcdefghij1!", "ABCDEFGHIJK1a"])
    def test_accepts_strong_passwords(self, password):
        check_password_strength(password)

    @pytest.mark.parametrize("password", ["", "Short1!", "alllowercaseletters", "ALLUPPER123456"])
    def test_rejects_weak_passwords(self, password):
        with pytest.raises(ValidationError):
            check_password_strength(password)


class TestTenantStatus:
    def _tenant(self, status):
        return Tenant(id="t", slug="t", company_name="T", email="t@t.test", status=status)

    def test_active_passes(self):
        assert ensure_tenant_active(self._tenant("active")).status == "active"

    @pytest.mark.parametrize("status", ["suspended", "canceled"])
    def test_suspended_or_canceled(self, status):
        with pytest.raises(TenantSuspended):
            ensure_tenant_active(self._tenant(status))

    def test_pending_verification(self):
        with pytest.raises(TenantUnverified):
            ensure_tenant_active(self._tenant("pending_verification"))

    def test_missing_tenant_is_generic_failure(self):
        with pytest.raises(AuthenticationFailed):
            ensure_tenant_active(None)


class TestVerifyPrimary:
    async def test_correct_password(self, runtime, acme, password):
        result = await runtime.verifier.verify_primary(acme.tenant.id, "owner@acme.test", password)
        assert result.user.id == acme.owner.id
        assert result.requires_second_factor is False
        assert result.second_factor_token is None

    async def test_email_is_case_insensitive(self, runtime, acme, password):
        result = await runtime.verifier.verify_primary(acme.tenant.id, " Owner@ACME.test ", password)
        assert result.user.id == acme.owner.id

    async def test_wrong_password_and_unknown_user_look_the_same(self, runtime, acme):
        with pytest.raises(AuthenticationFailed) as wrong:
            await runtime.verifier.verify_primary(acme.tenant.id, "owner@acme.test", "Wrong-Pass-123!")
        with pytest.raises(AuthenticationFailed) as unknown:
            await runtime.verifier.verify_primary(acme.tenant.id, "ghost@acme.test", "Wrong-Pass-123!")
        assert wrong.value.message == unknown.value.message
        assert wrong.value.status_code == unknown.value.status_code == 401

    async def test_user_from_other_tenant_cannot_log_in(self, runtime, acme, globex, password):
        with pytest.raises(AuthenticationFailed):
            await runtime.verifier.verify_primary(acme.tenant.id, "owner@globex.test", password)

    async def test_unknown_or_malformed_tenant(self, runtime, password):
        with pytest.raises(AuthenticationFailed):
            await runtime.verifier.verify_primary(
                "00000000-0000-0000-0000-000000000000", "owner@acme.test", password
            )
        with pytest.raises(AuthenticationFailed):
            await runtime.verifier.verify_primary("acme", "owner@acme.test", password)

    async def test_suspended_tenant(self, runtime, acme, password):
        runtime.store.update_tenant_status(acme.tenant.id, "suspended")
        with pytest.raises(TenantSuspended):
            await runtime.verifier.verify_primary(acme.tenant.id, "owner@acme.test", password)

    async def test_inactive_user_rejected(self, runtime, acme, password):
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.update_user_status(acme.member.id, "suspended")
        with pytest.raises(AuthenticationFailed):
            await runtime.verifier.verify_primary(acme.tenant.id, "member@acme.test", password)

    async def test_unverified_email_rejected(self, runtime, acme, password):
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.set_email_verified(acme.member.id, False)
        with pytest.raises(AuthenticationFailed):
            await runtime.verifier.verify_primary(acme.tenant.id, "member@acme.test", password)

    async def test_records_login(self, runtime, acme, password):
        await runtime.verifier.verify_primary(
            acme.tenant.id, "owner@acme.test", password, ip_address="203.0.113.9"
        )
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            user = tx.get_user(acme.owner.id)
        assert user.last_login_ip == "203.0.113.9"
        assert user.last_login_at is not None

    async def test_sixth_attempt_is_rate_limited_before_comparison(self, runtime, acme):
        for _ in range(5):
            with pytest.raises(AuthenticationFailed):
                await runtime.verifier.verify_primary(
                    acme.tenant.id, "owner@acme.test", "Wrong-Pass-123!"
                )
        with patch.object(
            runtime.verifier, "verify_password", wraps=runtime.verifier.verify_password
        ) as compare:
            with pytest.raises(RateLimited) as excinfo:
                await runtime.verifier.verify_primary(
                    acme.tenant.id, "owner@acme.test", "Wrong-Pass-123!"
                )
            compare.assert_not_called()
        assert excinfo.value.retry_after > 0
        assert excinfo.value.status_code == 429

    async def test_limit_is_per_tenant_and_email(self, runtime, acme, globex, password):
        for _ in range(5):
            with pytest.raises(AuthenticationFailed):
                await runtime.verifier.verify_primary(
                    acme.tenant.id, "owner@acme.test", "Wrong-Pass-123!"
                )
        # Same email on another tenant and another email on this tenant are unaffected
        await runtime.verifier.verify_primary(globex.tenant.id, "owner@globex.test", password)
        await runtime.verifier.verify_primary(acme.tenant.id, "member@acme.test", password)

    async def test_success_resets_counter(self, runtime, acme, password):
        for _ in range(4):
            with pytest.raises(AuthenticationFailed):
                await runtime.verifier.verify_primary(
                    acme.tenant.id, "owner@acme.test", "Wrong-Pass-123!"
                )
        await runtime.verifier.verify_primary(acme.tenant.id, "owner@acme.test", password)
        for _ in range(5):
            with pytest.raises(AuthenticationFailed):
                await runtime.verifier.verify_primary(
                    acme.tenant.id, "owner@acme.test", "Wrong-Pass-123!"
                )

    async def test_window_expiry_clears_limit(self, runtime, acme, cache_clock, password):
        for _ in range(5):
            with pytest.raises(AuthenticationFailed):
                await runtime.verifier.verify_primary(
                    acme.tenant.id, "owner@acme.test", "Wrong-Pass-123!"
                )
        cache_clock.advance(301)
        await runtime.verifier.verify_primary(acme.tenant.id, "owner@acme.test", password)

    async def test_two_factor_user_gets_pending_token(self, runtime, acme, enroll_totp, password):
        await enroll_totp(acme.tenant.id, acme.owner.id, "owner@acme.test")
        result = await runtime.verifier.verify_primary(acme.tenant.id, "owner@acme.test", password)
        assert result.requires_second_factor is True
        assert runtime.tokens.decode(result.second_factor_token, "2fa") is not None

    async def test_outdated_hash_is_upgraded(self, runtime, acme, password):
        from argon2 import PasswordHasher

        weak = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, hash_len=16)
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.update_password_hash(acme.member.id, weak.hash(password))
        await runtime.verifier.verify_primary(acme.tenant.id, "member@acme.test", password)
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            upgraded = tx.get_user(acme.member.id).password_hash
        assert not runtime.verifier.needs_rehash(upgraded)
