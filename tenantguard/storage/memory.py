from __future__ import annotations

import contextlib
import copy
import hmac
import os
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from tenantguard.logging import get_logger
from tenantguard.storage.common import (
    DEFAULT_PERMISSIONS,
    SecretCipher,
    generate_uuid,
    normalize_email,
    validate_tenant_id,
)
from tenantguard.storage.errors import ConstraintViolation, TenantIsolationViolation
from tenantguard.storage.models import (
    AuditEvent,
    Permission,
    Role,
    Session,
    Tenant,
    TwoFactorConfig,
    User,
    utcnow,
)

GrantRow = Tuple[str, str, Optional[str], Optional[str]]


class MemoryStore:
    """In-memory backing store mirroring the Postgres isolation rules.

    Transactions are serialized on one lock and rolled back from a snapshot.
    Every scoped read filters by the scope's tenant and every scoped write
    is checked against it, the way row-level security does in Postgres.
    """

    _DATA_ATTRS = (
        "tenants",
        "users",
        "two_factor",
        "sessions",
        "roles",
        "role_permissions",
        "user_roles",
        "audit_events",
    )

    def __init__(self, *, encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self.sessions: Dict[str, Session] = {}
        self.roles: Dict[str, Role] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        self.user_roles: Set[Tuple[str, str, str]] = set()
        self.audit_events: List[AuditEvent] = []
        self.permissions: Dict[str, Permission] = {}
        # RLock so helpers may re-enter inside an open transaction
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(
            encryption_key or os.getenv("ENCRYPTION_KEY") or os.getenv("JWT_SECRET") or ""
        )
        self._seed_permissions()

    def _seed_permissions(self) -> None:
        for resource, action, display_name, category in DEFAULT_PERMISSIONS:
            perm = Permission(
                id=generate_uuid(),
                resource=resource,
                action=action,
                display_name=display_name,
                category=category,
            )
            self.permissions[perm.id] = perm

    # ------------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------------

    def _snapshot(self) -> dict:
        return {attr: copy.deepcopy(getattr(self, attr)) for attr in self._DATA_ATTRS}

    def _restore(self, snapshot: dict) -> None:
        for attr, value in snapshot.items():
            setattr(self, attr, value)

    @contextlib.contextmanager
    def _transaction(
        self, tenant_id: Optional[str], *, read_only: bool, bypass: bool
    ) -> Iterator["MemoryTenantScope"]:
        with self._data_lock:
            snapshot = None if read_only else self._snapshot()
            scope = MemoryTenantScope(self, tenant_id, read_only=read_only, bypass=bypass)
            try:
                yield scope
            except BaseException:
                if snapshot is not None:
                    self._restore(snapshot)
                raise
            else:
                if scope.aborted and snapshot is not None:
                    self._restore(snapshot)
            finally:
                scope.closed = True

    @contextlib.contextmanager
    def tenant_transaction(
        self, tenant_id: str, *, read_only: bool = False
    ) -> Iterator["MemoryTenantScope"]:
        tenant_id = validate_tenant_id(tenant_id)
        with self._transaction(tenant_id, read_only=read_only, bypass=False) as scope:
            yield scope

    @contextlib.contextmanager
    def bypass_transaction(self, reason: str) -> Iterator["MemoryTenantScope"]:
        with self._transaction(None, read_only=False, bypass=True) as scope:
            yield scope

    # ------------------------------------------------------------------
    # global (non tenant-scoped) tables
    # ------------------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> Tenant:
        with self._data_lock:
            tenant.id = validate_tenant_id(tenant.id)
            if tenant.id in self.tenants:
                raise ConstraintViolation("tenant exists", {"tenant_id": tenant.id})
            if any(t.slug == tenant.slug for t in self.tenants.values()):
                raise ConstraintViolation("tenant slug exists", {"slug": tenant.slug})
            self.tenants[tenant.id] = replace(tenant)
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.slug == slug:
                    return replace(tenant)
            return None

    def update_tenant_status(self, tenant_id: str, status: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            now = utcnow()
            tenant.status = status
            if status == "active" and tenant.activated_at is None:
                tenant.activated_at = now
            if status == "suspended":
                tenant.suspended_at = now
            return replace(tenant)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(
                (replace(p) for p in self.permissions.values()),
                key=lambda p: (p.resource, p.action),
            )

    def get_permission(self, resource: str, action: str) -> Optional[Permission]:
        with self._data_lock:
            for perm in self.permissions.values():
                if perm.resource == resource and perm.action == action:
                    return replace(perm)
            return None

    def close(self) -> None:
        return None


class MemoryTenantScope:
    """Handle for one memory transaction; see ``MemoryStore``."""

    def __init__(
        self,
        store: MemoryStore,
        tenant_id: Optional[str],
        *,
        read_only: bool = False,
        bypass: bool = False,
    ) -> None:
        self._store = store
        self.tenant_id = tenant_id
        self.read_only = read_only
        self.bypass = bypass
        self.aborted = False
        self.closed = False

    def abort(self) -> None:
        """Roll back on exit instead of committing."""
        self.aborted = True

    # -- isolation checks --------------------------------------------------

    def _ensure_open(self) -> None:
        if self.closed:
            raise TenantIsolationViolation(
                "scoped transaction used after release", {"tenant_id": self.tenant_id}
            )

    def _visible(self, tenant_id: str) -> bool:
        return self.bypass or tenant_id == self.tenant_id

    def _check_write(self, tenant_id: str) -> None:
        self._ensure_open()
        if self.read_only:
            raise ConstraintViolation("cannot write in a read-only transaction")
        if not self._visible(tenant_id):
            raise TenantIsolationViolation(
                "row tenant does not match isolation context",
                {"row_tenant_id": tenant_id, "tenant_id": self.tenant_id},
            )

    def _user(self, user_id: str) -> Optional[User]:
        self._ensure_open()
        user = self._store.users.get(user_id)
        if user and self._visible(user.tenant_id):
            return user
        return None

    def _session(self, session_id: str) -> Optional[Session]:
        self._ensure_open()
        sess = self._store.sessions.get(session_id)
        if sess and self._visible(sess.tenant_id):
            return sess
        return None

    def _role(self, role_id: str) -> Optional[Role]:
        self._ensure_open()
        role = self._store.roles.get(role_id)
        if role and self._visible(role.tenant_id):
            return role
        return None

    # -- users -------------------------------------------------------------

    def create_user(self, user: User) -> User:
        self._check_write(user.tenant_id)
        user.email = normalize_email(user.email)
        for existing in self._store.users.values():
            if existing.tenant_id == user.tenant_id and existing.email == user.email:
                raise ConstraintViolation(
                    "email already registered for tenant", {"email": user.email}
                )
        self._store.users[user.id] = replace(user)
        return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        user = self._user(user_id)
        return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        self._ensure_open()
        email = normalize_email(email)
        for user in self._store.users.values():
            if self._visible(user.tenant_id) and user.email == email:
                return replace(user)
        return None

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        user = self._user(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        self._check_write(user.tenant_id)
        user.password_hash = password_hash

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        user = self._user(user_id)
        if not user:
            return None
        self._check_write(user.tenant_id)
        user.status = status
        return replace(user)

    def set_email_verified(self, user_id: str, verified: bool = True) -> None:
        user = self._user(user_id)
        if user:
            self._check_write(user.tenant_id)
            user.email_verified = verified

    def record_login(self, user_id: str, ip_address: Optional[str]) -> None:
        user = self._user(user_id)
        if user:
            self._check_write(user.tenant_id)
            user.last_login_at = utcnow()
            user.last_login_ip = ip_address

    # -- second factor -----------------------------------------------------

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        self._ensure_open()
        cfg = self._store.two_factor.get(user_id)
        if not cfg or not self._visible(cfg.tenant_id):
            return None
        cipher = self._store._cipher
        return replace(
            cfg,
            secret=cipher.decrypt(cfg.secret),
            backup_codes=cipher.decrypt_many(cfg.backup_codes),
        )

    def save_two_factor(self, config: TwoFactorConfig) -> None:
        self._check_write(config.tenant_id)
        user = self._user(config.user_id)
        if not user:
            raise ConstraintViolation("user not found for 2fa", {"user_id": config.user_id})
        cipher = self._store._cipher
        self._store.two_factor[config.user_id] = replace(
            config,
            secret=cipher.encrypt(config.secret),
            backup_codes=cipher.encrypt_many(config.backup_codes),
        )
        user.two_factor_enabled = config.enabled

    def delete_two_factor(self, user_id: str) -> bool:
        user = self._user(user_id)
        if not user:
            return False
        self._check_write(user.tenant_id)
        user.two_factor_enabled = False
        return self._store.two_factor.pop(user_id, None) is not None

    def set_backup_codes(self, user_id: str, codes: List[str]) -> None:
        cfg = self._store.two_factor.get(user_id)
        if not cfg or not self._visible(cfg.tenant_id):
            raise ConstraintViolation("2fa not configured", {"user_id": user_id})
        self._check_write(cfg.tenant_id)
        cfg.backup_codes = self._store._cipher.encrypt_many(codes)

    def consume_backup_code(self, user_id: str, code: str) -> bool:
        self._ensure_open()
        cfg = self._store.two_factor.get(user_id)
        if not cfg or not cfg.enabled or not self._visible(cfg.tenant_id):
            return False
        self._check_write(cfg.tenant_id)
        cipher = self._store._cipher
        for idx, stored in enumerate(cfg.backup_codes):
            if _codes_equal(cipher.decrypt(stored), code):
                del cfg.backup_codes[idx]
                return True
        return False

    def advance_totp_step(self, user_id: str, step: int) -> bool:
        self._ensure_open()
        cfg = self._store.two_factor.get(user_id)
        if not cfg or not self._visible(cfg.tenant_id):
            return False
        self._check_write(cfg.tenant_id)
        if step <= cfg.last_used_step:
            return False
        cfg.last_used_step = step
        return True

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        self._check_write(session.tenant_id)
        user = self._user(session.user_id)
        if not user or user.tenant_id != session.tenant_id:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        if session.id in self._store.sessions:
            raise ConstraintViolation("session exists", {"session_id": session.id})
        for existing in self._store.sessions.values():
            if existing.access_token_hash == session.access_token_hash:
                raise ConstraintViolation("token hash collision")
        self._store.sessions[session.id] = replace(session)
        return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        sess = self._session(session_id)
        return replace(sess) if sess else None

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        sess = self._session(session_id)
        if not sess:
            return False
        self._check_write(sess.tenant_id)
        if sess.revoked_at is not None or sess.refresh_token_hash != expected_refresh_hash:
            return False
        sess.access_token_hash = access_token_hash
        sess.refresh_token_hash = refresh_token_hash
        sess.last_activity_at = utcnow()
        if expires_at is not None:
            sess.expires_at = expires_at
        return True

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> None:
        sess = self._session(session_id)
        if sess:
            self._check_write(sess.tenant_id)
            sess.last_activity_at = at or utcnow()

    def revoke_session(self, session_id: str) -> bool:
        sess = self._session(session_id)
        if not sess or sess.revoked_at is not None:
            return False
        self._check_write(sess.tenant_id)
        sess.revoked_at = utcnow()
        return True

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        self._ensure_open()
        now = utcnow()
        revoked = 0
        for sess in self._store.sessions.values():
            if (
                sess.user_id == user_id
                and self._visible(sess.tenant_id)
                and sess.revoked_at is None
                and sess.id != except_session_id
            ):
                self._check_write(sess.tenant_id)
                sess.revoked_at = now
                revoked += 1
        return revoked

    def revoke_tenant_sessions(self) -> int:
        self._ensure_open()
        now = utcnow()
        revoked = 0
        for sess in self._store.sessions.values():
            if self._visible(sess.tenant_id) and sess.revoked_at is None:
                self._check_write(sess.tenant_id)
                sess.revoked_at = now
                revoked += 1
        return revoked

    def list_user_sessions(self, user_id: str) -> List[Session]:
        self._ensure_open()
        rows = [
            replace(s)
            for s in self._store.sessions.values()
            if s.user_id == user_id and self._visible(s.tenant_id)
        ]
        return sorted(rows, key=lambda s: s.last_activity_at, reverse=True)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        self._ensure_open()
        now = now or utcnow()
        stale = [
            sid
            for sid, s in self._store.sessions.items()
            if self._visible(s.tenant_id) and (s.expires_at <= now or s.revoked_at is not None)
        ]
        for sid in stale:
            self._check_write(self._store.sessions[sid].tenant_id)
            del self._store.sessions[sid]
        return len(stale)

    # -- roles -------------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        self._check_write(role.tenant_id)
        for existing in self._store.roles.values():
            if existing.tenant_id == role.tenant_id and existing.name == role.name:
                raise ConstraintViolation("role name exists", {"name": role.name})
        self._store.roles[role.id] = replace(role)
        self._store.role_permissions.setdefault(role.id, set())
        return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        role = self._role(role_id)
        return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        self._ensure_open()
        for role in self._store.roles.values():
            if self._visible(role.tenant_id) and role.name == name:
                return replace(role)
        return None

    def list_roles(self) -> List[Role]:
        self._ensure_open()
        rows = [replace(r) for r in self._store.roles.values() if self._visible(r.tenant_id)]
        return sorted(rows, key=lambda r: (r.level, r.name))

    def delete_role(self, role_id: str) -> bool:
        role = self._role(role_id)
        if not role:
            return False
        self._check_write(role.tenant_id)
        del self._store.roles[role_id]
        self._store.role_permissions.pop(role_id, None)
        self._store.user_roles = {
            row for row in self._store.user_roles if row[2] != role_id
        }
        return True

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        if not self._role(role_id):
            return []
        perm_ids = self._store.role_permissions.get(role_id, set())
        perms = [replace(self._store.permissions[p]) for p in perm_ids if p in self._store.permissions]
        return sorted(perms, key=lambda p: (p.resource, p.action))

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None:
        role = self._role(role_id)
        if not role:
            raise ConstraintViolation("role not found", {"role_id": role_id})
        self._check_write(role.tenant_id)
        ids = set(permission_ids)
        unknown = ids - set(self._store.permissions)
        if unknown:
            raise ConstraintViolation("unknown permission", {"permission_ids": sorted(unknown)})
        self._store.role_permissions[role_id] = ids

    def add_role_permission(self, role_id: str, permission_id: str) -> bool:
        role = self._role(role_id)
        if not role:
            raise ConstraintViolation("role not found", {"role_id": role_id})
        self._check_write(role.tenant_id)
        if permission_id not in self._store.permissions:
            raise ConstraintViolation("unknown permission", {"permission_id": permission_id})
        current = self._store.role_permissions.setdefault(role_id, set())
        if permission_id in current:
            return False
        current.add(permission_id)
        return True

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        role = self._role(role_id)
        if not role:
            return False
        self._check_write(role.tenant_id)
        current = self._store.role_permissions.get(role_id, set())
        if permission_id not in current:
            return False
        current.discard(permission_id)
        return True

    def assign_role(self, user_id: str, role_id: str) -> bool:
        user = self._user(user_id)
        role = self._role(role_id)
        if not user or not role:
            raise ConstraintViolation(
                "user or role not found", {"user_id": user_id, "role_id": role_id}
            )
        if user.tenant_id != role.tenant_id:
            raise ConstraintViolation(
                "user and role belong to different tenants",
                {"user_id": user_id, "role_id": role_id},
            )
        self._check_write(role.tenant_id)
        key = (role.tenant_id, user_id, role_id)
        if key in self._store.user_roles:
            return False
        self._store.user_roles.add(key)
        return True

    def unassign_role(self, user_id: str, role_id: str) -> bool:
        role = self._role(role_id)
        if not role:
            return False
        self._check_write(role.tenant_id)
        key = (role.tenant_id, user_id, role_id)
        if key not in self._store.user_roles:
            return False
        self._store.user_roles.discard(key)
        return True

    def get_user_roles(self, user_id: str) -> List[Role]:
        self._ensure_open()
        roles = []
        for tenant_id, uid, role_id in self._store.user_roles:
            if uid != user_id or not self._visible(tenant_id):
                continue
            role = self._role(role_id)
            if role:
                roles.append(replace(role))
        return sorted(roles, key=lambda r: (r.level, r.name))

    def resolve_user_grants(self, user_id: str) -> List[GrantRow]:
        """(role_id, role_name, resource, action) for every held role.

        Roles without permissions appear once with ``None`` resource/action.
        """
        rows: List[GrantRow] = []
        for role in self.get_user_roles(user_id):
            perms = self.get_role_permissions(role.id)
            if not perms:
                rows.append((role.id, role.name, None, None))
            for perm in perms:
                rows.append((role.id, role.name, perm.resource, perm.action))
        return rows

    # -- audit -------------------------------------------------------------

    def insert_audit_event(self, event: AuditEvent) -> None:
        self._check_write(event.tenant_id)
        self._store.audit_events.append(replace(event))


def _codes_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
