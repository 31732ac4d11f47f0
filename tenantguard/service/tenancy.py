from __future__ import annotations

import contextlib
from contextvars import ContextVar
from datetime import datetime
from typing import ContextManager, Iterable, Iterator, List, Optional, Protocol, Tuple

from tenantguard.logging import get_logger
from tenantguard.storage.errors import TenantIsolationViolation
from tenantguard.storage.models import (
    AuditEvent,
    Permission,
    Role,
    Session,
    Tenant,
    TwoFactorConfig,
    User,
)

logger = get_logger(__name__)

# Tenant id of the gate currently open in this flow of control ("*" for bypass)
_active_gate: ContextVar[Optional[str]] = ContextVar("tenantguard_active_gate", default=None)


class TenantScope(Protocol):
    """Handle for one scoped transaction. Valid only inside its ``with`` block."""

    tenant_id: Optional[str]

    def abort(self) -> None: ...

    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def update_user_status(self, user_id: str, status: str) -> Optional[User]: ...

    def set_email_verified(self, user_id: str, verified: bool = True) -> None: ...

    def record_login(self, user_id: str, ip_address: Optional[str]) -> None: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]: ...

    def save_two_factor(self, config: TwoFactorConfig) -> None: ...

    def delete_two_factor(self, user_id: str) -> bool: ...

    def set_backup_codes(self, user_id: str, codes: List[str]) -> None: ...

    def consume_backup_code(self, user_id: str, code: str) -> bool: ...

    def advance_totp_step(self, user_id: str, step: int) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        expires_at: Optional[datetime] = None,
    ) -> bool: ...

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> None: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def revoke_tenant_sessions(self) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...

    def create_role(self, role: Role) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def get_role_permissions(self, role_id: str) -> List[Permission]: ...

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None: ...

    def add_role_permission(self, role_id: str, permission_id: str) -> bool: ...

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool: ...

    def assign_role(self, user_id: str, role_id: str) -> bool: ...

    def unassign_role(self, user_id: str, role_id: str) -> bool: ...

    def get_user_roles(self, user_id: str) -> List[Role]: ...

    def resolve_user_grants(
        self, user_id: str
    ) -> List[Tuple[str, str, Optional[str], Optional[str]]]: ...

    def insert_audit_event(self, event: AuditEvent) -> None: ...


class AuthStore(Protocol):
    def tenant_transaction(
        self, tenant_id: str, *, read_only: bool = False
    ) -> ContextManager[TenantScope]: ...

    def bypass_transaction(self, reason: str) -> ContextManager[TenantScope]: ...

    def create_tenant(self, tenant: Tenant) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...

    def update_tenant_status(self, tenant_id: str, status: str) -> Optional[Tenant]: ...

    def list_permissions(self) -> List[Permission]: ...

    def get_permission(self, resource: str, action: str) -> Optional[Permission]: ...

    def close(self) -> None: ...


class TenantGate:
    """Entry point for every tenant-scoped unit of work.

    ``scope`` opens one transaction with the isolation parameter set to the
    tenant and yields its handle. The transaction commits on clean exit and
    rolls back on any exception (cancellation included) or ``abort()``.
    Gates do not nest: a second gate in the same flow raises
    ``TenantIsolationViolation``. Violations are logged at critical level
    and always re-raised.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    @staticmethod
    def active_tenant() -> Optional[str]:
        return _active_gate.get()

    @contextlib.contextmanager
    def _guard(self, marker: str) -> Iterator[None]:
        current = _active_gate.get()
        if current is not None:
            logger.critical(
                "tenant_isolation_violation",
                reason="nested_gate",
                tenant_id=marker,
                open_tenant_id=current,
            )
            raise TenantIsolationViolation(
                "tenant gate opened while another is active",
                {"tenant_id": marker, "open_tenant_id": current},
            )
        token = _active_gate.set(marker)
        try:
            yield
        finally:
            _active_gate.reset(token)

    @contextlib.contextmanager
    def scope(self, tenant_id: str, *, read_only: bool = False) -> Iterator[TenantScope]:
        with self._guard(str(tenant_id)):
            try:
                with self.store.tenant_transaction(tenant_id, read_only=read_only) as tx:
                    yield tx
            except TenantIsolationViolation as exc:
                logger.critical(
                    "tenant_isolation_violation",
                    tenant_id=str(tenant_id),
                    error=exc.message,
                    detail=exc.detail,
                )
                raise

    @contextlib.contextmanager
    def bypass(self, reason: str) -> Iterator[TenantScope]:
        """Privileged transaction that sees every tenant. Maintenance only."""
        if not reason:
            raise ValueError("a bypass reason is required")
        logger.warning("tenant_gate_bypass", reason=reason)
        with self._guard("*"):
            try:
                with self.store.bypass_transaction(reason) as tx:
                    yield tx
            except TenantIsolationViolation as exc:
                logger.critical(
                    "tenant_isolation_violation",
                    reason=reason,
                    bypass=True,
                    error=exc.message,
                    detail=exc.detail,
                )
                raise


def with_tenant_context(
    store: AuthStore, tenant_id: str, *, read_only: bool = False
) -> ContextManager[TenantScope]:
    """Shorthand for ``TenantGate(store).scope(tenant_id)``."""
    return TenantGate(store).scope(tenant_id, read_only=read_only)
