"""Session issue, validation, rotation and revocation."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from tenantguard.service.device import parse_device_info
from tenantguard.service.errors import (
    AuthenticationFailed,
    SecondFactorRequired,
    SessionRevokedOrExpired,
    TenantSuspended,
)

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@pytest.fixture
def issue(runtime, acme):
    async def _issue(user=None, **kwargs):
        return await runtime.sessions.issue_session(acme.tenant, user or acme.owner, **kwargs)

    return _issue


class TestIssueAndAuthenticate:
    async def test_issued_session_authenticates(self, runtime, acme, issue):
        issued = await issue(device=parse_device_info(CHROME_UA, ip_address="198.51.100.4"))
        ctx = await runtime.sessions.authenticate(issued.access_token)
        assert ctx.tenant_id == acme.tenant.id
        assert ctx.user_id == acme.owner.id
        assert ctx.session_id == issued.session.id
        assert issued.session.device_type == "Desktop"
        assert issued.session.browser == "Chrome"
        assert issued.session.ip_address == "198.51.100.4"

    async def test_tokens_stored_hashed(self, runtime, acme, issue):
        issued = await issue()
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            stored = tx.get_session(issued.session.id)
        assert stored.access_token_hash != issued.access_token
        assert stored.refresh_token_hash != issued.refresh_token
        assert len(stored.access_token_hash) == 64

    async def test_remember_me_extends_expiry(self, runtime, issue, settings):
        short = await issue()
        long = await issue(remember_me=True)
        delta = long.session.expires_at - short.session.expires_at
        assert delta >= timedelta(days=settings.remember_me_ttl_days - settings.refresh_token_ttl_days - 1)

    async def test_refresh_token_is_not_an_access_token(self, runtime, issue):
        issued = await issue()
        with pytest.raises(AuthenticationFailed):
            await runtime.sessions.authenticate(issued.refresh_token)

    async def test_pending_second_factor_token_signals_requirement(self, runtime, acme):
        pending, _ = runtime.tokens.issue_second_factor_token(acme.tenant, acme.owner)
        with pytest.raises(SecondFactorRequired):
            await runtime.sessions.authenticate(pending)

    async def test_revoked_session_rejected(self, runtime, acme, issue):
        issued = await issue()
        await runtime.sessions.revoke(acme.tenant.id, issued.session.id)
        with pytest.raises(SessionRevokedOrExpired):
            await runtime.sessions.authenticate(issued.access_token)

    async def test_session_deactivated_user_rejected(self, runtime, acme, issue):
        issued = await issue(user=acme.member)
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.update_user_status(acme.member.id, "deactivated")
        with pytest.raises(SessionRevokedOrExpired):
            await runtime.sessions.authenticate(issued.access_token)

    async def test_suspended_tenant_rejected(self, runtime, acme, issue):
        issued = await issue()
        runtime.store.update_tenant_status(acme.tenant.id, "suspended")
        with pytest.raises(TenantSuspended):
            await runtime.sessions.authenticate(issued.access_token)

    async def test_idle_session_is_revoked(self, runtime, acme, issue, later):
        issued = await issue()
        with patch.object(runtime.tokens, "_now", return_value=later(minutes=14)):
            # 14 minutes idle is under the 30 minute limit
            await runtime.sessions.authenticate(issued.access_token)

        issued = await issue()
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.touch_session(issued.session.id, later(minutes=-31))
        with pytest.raises(SessionRevokedOrExpired):
            await runtime.sessions.authenticate(issued.access_token)
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            assert tx.get_session(issued.session.id).revoked_at is not None

    async def test_authenticate_touches_activity(self, runtime, acme, issue, later):
        issued = await issue()
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.touch_session(issued.session.id, later(minutes=-20))
        await runtime.sessions.authenticate(issued.access_token)
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            touched = tx.get_session(issued.session.id).last_activity_at
        assert touched > later(minutes=-1)

    async def test_expired_access_token_rejected(self, runtime, issue, later, settings):
        issued = await issue()
        with patch.object(
            runtime.tokens, "_now", return_value=later(minutes=settings.access_token_ttl_minutes + 1)
        ):
            with pytest.raises(AuthenticationFailed):
                await runtime.sessions.authenticate(issued.access_token)


class TestRefresh:
    async def test_refresh_rotates_tokens(self, runtime, issue):
        issued = await issue()
        refreshed = await runtime.sessions.refresh(issued.refresh_token)
        assert refreshed.session.id == issued.session.id
        assert refreshed.refresh_token != issued.refresh_token
        assert refreshed.access_token != issued.access_token
        await runtime.sessions.authenticate(refreshed.access_token)

    async def test_old_access_token_superseded_after_refresh(self, runtime, issue):
        issued = await issue()
        await runtime.sessions.refresh(issued.refresh_token)
        with pytest.raises(SessionRevokedOrExpired):
            await runtime.sessions.authenticate(issued.access_token)

    async def test_replayed_refresh_token_rejected(self, runtime, issue):
        issued = await issue()
        refreshed = await runtime.sessions.refresh(issued.refresh_token)
        with pytest.raises(SessionRevokedOrExpired):
            await runtime.sessions.refresh(issued.refresh_token)
        # The legitimate holder keeps working
        again = await runtime.sessions.refresh(refreshed.refresh_token)
        await runtime.sessions.authenticate(again.access_token)

    async def test_refresh_after_long_idle_succeeds(self, runtime, acme, issue, later):
        issued = await issue(remember_me=True)
        with runtime.gate.scope(acme.tenant.id) as tx:
            tx.touch_session(issued.session.id, later(minutes=-120))
        refreshed = await runtime.sessions.refresh(issued.refresh_token)
        ctx = await runtime.sessions.authenticate(refreshed.access_token)
        assert ctx.session_id == issued.session.id

    async def test_refresh_without_rotation_keeps_refresh_token(self, runtime, issue):
        issued = await issue()
        refreshed = await runtime.sessions.refresh(issued.refresh_token, rotate=False)
        assert refreshed.refresh_token == issued.refresh_token
        await runtime.sessions.refresh(issued.refresh_token, rotate=False)

    async def test_refresh_of_revoked_session_rejected(self, runtime, acme, issue):
        issued = await issue()
        await runtime.sessions.revoke(acme.tenant.id, issued.session.id)
        with pytest.raises(SessionRevokedOrExpired):
            await runtime.sessions.refresh(issued.refresh_token)

    async def test_access_token_cannot_refresh(self, runtime, issue):
        issued = await issue()
        with pytest.raises(AuthenticationFailed):
            await runtime.sessions.refresh(issued.access_token)


class TestRevocation:
    async def test_revoke_is_idempotent(self, runtime, acme, issue):
        issued = await issue()
        assert await runtime.sessions.revoke(acme.tenant.id, issued.session.id) is True
        assert await runtime.sessions.revoke(acme.tenant.id, issued.session.id) is False

    async def test_revoke_unknown_session_is_noop(self, runtime, acme):
        assert await runtime.sessions.revoke(acme.tenant.id, "missing") is False

    async def test_revoke_cannot_reach_other_tenant(self, runtime, acme, globex, issue):
        issued = await issue()
        assert await runtime.sessions.revoke(globex.tenant.id, issued.session.id) is False
        await runtime.sessions.authenticate(issued.access_token)

    async def test_revoke_all_keeps_current(self, runtime, acme, issue):
        first = await issue()
        second = await issue()
        third = await issue()
        count = await runtime.sessions.revoke_all(
            acme.tenant.id, acme.owner.id, except_session_id=second.session.id
        )
        assert count == 2
        await runtime.sessions.authenticate(second.access_token)
        for gone in (first, third):
            with pytest.raises(SessionRevokedOrExpired):
                await runtime.sessions.authenticate(gone.access_token)

    async def test_revoke_all_leaves_other_users(self, runtime, acme, issue):
        mine = await issue()
        theirs = await issue(user=acme.member)
        await runtime.sessions.revoke_all(acme.tenant.id, acme.owner.id)
        await runtime.sessions.authenticate(theirs.access_token)
        with pytest.raises(SessionRevokedOrExpired):
            await runtime.sessions.authenticate(mine.access_token)


class TestListing:
    async def test_lists_active_sessions_with_current_flag(self, runtime, acme, issue):
        desktop = await issue(device=parse_device_info(CHROME_UA))
        phone = await issue(device=parse_device_info(IPHONE_UA))
        revoked = await issue()
        await runtime.sessions.revoke(acme.tenant.id, revoked.session.id)

        listed = await runtime.sessions.list_sessions(
            acme.tenant.id, acme.owner.id, current_session_id=phone.session.id
        )
        ids = {s.session.id: s.is_current for s in listed}
        assert ids == {desktop.session.id: False, phone.session.id: True}

        stats = await runtime.sessions.session_stats(acme.tenant.id, acme.owner.id)
        assert stats == {"active_sessions": 2, "by_device_type": {"Desktop": 1, "Mobile": 1}}

    async def test_cleanup_removes_revoked_sessions(self, runtime, acme, issue):
        keep = await issue()
        drop = await issue()
        await runtime.sessions.revoke(acme.tenant.id, drop.session.id)
        assert await runtime.sessions.cleanup_expired() == 1
        with runtime.gate.scope(acme.tenant.id, read_only=True) as tx:
            assert tx.get_session(drop.session.id) is None
            assert tx.get_session(keep.session.id) is not None
