from __future__ import annotations

import contextlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from psycopg import Rollback, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantguard.logging import get_logger
from tenantguard.storage.common import (
    SecretCipher,
    normalize_email,
    parse_ip_address,
    validate_tenant_id,
)
from tenantguard.storage.errors import (
    ConstraintViolation,
    StorageUnavailable,
    TenantIsolationViolation,
)
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

TENANT_PARAMETER = "app.current_tenant_id"
BYPASS_PARAMETER = "app.bypass_rls"

_USER_COLUMNS = """
    id, tenant_id, email, password_hash, first_name, last_name, status,
    email_verified, two_factor_enabled, created_at, last_login_at, last_login_ip
"""

_SESSION_COLUMNS = """
    id, tenant_id, user_id, access_token_hash, refresh_token_hash, device_type,
    browser, os, ip_address, user_agent, country_code, city, remember_me,
    created_at, last_activity_at, expires_at, revoked_at
"""

_ROLE_COLUMNS = """
    id, tenant_id, name, display_name, description, level, parent_role_id,
    is_system, created_at
"""


def _s(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _row_to_tenant(row: Dict[str, Any]) -> Tenant:
    return Tenant(
        id=str(row["id"]),
        slug=row["slug"],
        company_name=row["company_name"],
        email=row["email"],
        status=row["status"],
        plan_tier=row.get("plan_tier") or "free",
        created_at=row["created_at"],
        activated_at=row.get("activated_at"),
        suspended_at=row.get("suspended_at"),
        settings=row.get("settings") or {},
    )


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        email=row["email"],
        password_hash=row["password_hash"] or "",
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        status=row["status"],
        email_verified=bool(row["email_verified"]),
        two_factor_enabled=bool(row["two_factor_enabled"]),
        created_at=row["created_at"],
        last_login_at=row.get("last_login_at"),
        last_login_ip=_s(row.get("last_login_ip")),
    )


def _row_to_session(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        user_id=str(row["user_id"]),
        access_token_hash=row["access_token_hash"],
        refresh_token_hash=row["refresh_token_hash"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        last_activity_at=row["last_activity_at"],
        device_type=row.get("device_type"),
        browser=row.get("browser"),
        os=row.get("os"),
        ip_address=_s(row.get("ip_address")),
        user_agent=row.get("user_agent"),
        country_code=row.get("country_code"),
        city=row.get("city"),
        remember_me=bool(row.get("remember_me")),
        revoked_at=row.get("revoked_at"),
    )


def _row_to_role(row: Dict[str, Any]) -> Role:
    return Role(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        name=row["name"],
        display_name=row.get("display_name") or "",
        description=row.get("description") or "",
        level=int(row.get("level") or 0),
        parent_role_id=_s(row.get("parent_role_id")),
        is_system=bool(row.get("is_system")),
        created_at=row["created_at"],
    )


def _row_to_permission(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=str(row["id"]),
        resource=row["resource"],
        action=row["action"],
        display_name=row.get("display_name") or "",
        description=row.get("description") or "",
        category=row.get("category") or "",
    )


class PostgresStore:
    """Postgres-backed store; tenant isolation is enforced by RLS policies.

    Every tenant-scoped statement runs inside ``tenant_transaction`` which
    sets ``app.current_tenant_id`` for that transaction only.
    """

    REQUIRED_TABLES = (
        "tenants",
        "users",
        "sessions",
        "permissions",
        "roles",
        "role_permissions",
        "user_roles",
        "audit_logs",
    )

    def __init__(
        self,
        dsn: str,
        *,
        encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the tables and RLS policies exist before serving requests."""

        with self._global() as conn:
            rows = conn.execute(
                """
                SELECT c.relname AS name, c.relrowsecurity AS rls, c.relforcerowsecurity AS forced
                FROM pg_class c
                JOIN pg_namespace n ON n.oid = c.relnamespace
                WHERE n.nspname = current_schema() AND c.relkind = 'r'
                """
            ).fetchall()
        tables = {row["name"]: row for row in rows}
        missing = [t for t in self.REQUIRED_TABLES if t not in tables]
        if missing:
            self.logger.error("schema_tables_missing", missing=missing)
            raise RuntimeError(
                f"Missing required tables: {', '.join(missing)}; apply tenantguard/storage/schema.sql"
            )
        unprotected = [
            t
            for t in ("users", "sessions", "roles", "role_permissions", "user_roles", "audit_logs")
            if not (tables[t]["rls"] and tables[t]["forced"])
        ]
        if unprotected:
            self.logger.error("schema_rls_disabled", tables=unprotected)
            raise RuntimeError(
                f"Row-level security is not forced on: {', '.join(unprotected)}"
            )

    # ------------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------------

    @staticmethod
    def _set_local(conn, name: str, value: str) -> None:
        """Set a transaction-local parameter and read it back; fail closed."""
        try:
            row = conn.execute(
                "SELECT set_config(%s, %s, true) AS value", (name, value)
            ).fetchone()
            check = conn.execute(
                "SELECT current_setting(%s, true) AS value", (name,)
            ).fetchone()
        except errors.Error as exc:
            raise TenantIsolationViolation(
                "unable to set isolation parameter", {"parameter": name}
            ) from exc
        if not row or row["value"] != value or not check or check["value"] != value:
            raise TenantIsolationViolation(
                "isolation parameter did not take effect", {"parameter": name}
            )

    @contextlib.contextmanager
    def _transaction(
        self, tenant_id: Optional[str], *, read_only: bool, bypass: bool
    ) -> Iterator["PostgresTenantScope"]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    if read_only:
                        conn.execute("SET TRANSACTION READ ONLY")
                    if bypass:
                        self._set_local(conn, BYPASS_PARAMETER, "true")
                    else:
                        self._set_local(conn, TENANT_PARAMETER, tenant_id)
                    scope = PostgresTenantScope(
                        conn, self._cipher, tenant_id, read_only=read_only, bypass=bypass
                    )
                    try:
                        yield scope
                    finally:
                        scope.closed = True
                    if scope.aborted:
                        raise Rollback()
        except errors.InsufficientPrivilege as exc:
            # RLS WITH CHECK rejected a row from another tenant
            raise TenantIsolationViolation(
                "row tenant does not match isolation context", {"tenant_id": tenant_id}
            ) from exc
        except errors.ReadOnlySqlTransaction as exc:
            raise ConstraintViolation("cannot write in a read-only transaction") from exc
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(str(exc)) from exc

    @contextlib.contextmanager
    def tenant_transaction(
        self, tenant_id: str, *, read_only: bool = False
    ) -> Iterator["PostgresTenantScope"]:
        tenant_id = validate_tenant_id(tenant_id)
        with self._transaction(tenant_id, read_only=read_only, bypass=False) as scope:
            yield scope

    @contextlib.contextmanager
    def bypass_transaction(self, reason: str) -> Iterator["PostgresTenantScope"]:
        with self._transaction(None, read_only=False, bypass=True) as scope:
            yield scope

    @contextlib.contextmanager
    def _global(self):
        """Connection for tables outside row-level security."""
        try:
            with self._connect() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(str(exc)) from exc

    # ------------------------------------------------------------------
    # global (non tenant-scoped) tables
    # ------------------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> Tenant:
        tenant.id = validate_tenant_id(tenant.id)
        try:
            with self._global() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tenants (id, slug, company_name, email, status, plan_tier, settings, activated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        tenant.id,
                        tenant.slug,
                        tenant.company_name,
                        tenant.email,
                        tenant.status,
                        tenant.plan_tier,
                        json.dumps(tenant.settings or {}),
                        tenant.activated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("tenant slug exists", {"slug": tenant.slug}) from exc
        return _row_to_tenant(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        try:
            tenant_id = validate_tenant_id(tenant_id)
        except TenantIsolationViolation:
            return None
        with self._global() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE id = %s", (tenant_id,)).fetchone()
        return _row_to_tenant(row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._global() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE slug = %s", (slug,)).fetchone()
        return _row_to_tenant(row) if row else None

    def update_tenant_status(self, tenant_id: str, status: str) -> Optional[Tenant]:
        with self._global() as conn:
            row = conn.execute(
                """
                UPDATE tenants
                SET status = %s,
                    activated_at = CASE WHEN %s = 'active' THEN COALESCE(activated_at, now()) ELSE activated_at END,
                    suspended_at = CASE WHEN %s = 'suspended' THEN now() ELSE suspended_at END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (status, status, status, tenant_id),
            ).fetchone()
        return _row_to_tenant(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._global() as conn:
            rows = conn.execute(
                "SELECT * FROM permissions ORDER BY resource, action"
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def get_permission(self, resource: str, action: str) -> Optional[Permission]:
        with self._global() as conn:
            row = conn.execute(
                "SELECT * FROM permissions WHERE resource = %s AND action = %s",
                (resource, action),
            ).fetchone()
        return _row_to_permission(row) if row else None

    def close(self) -> None:
        self.pool.close()


class PostgresTenantScope:
    """Handle bound to one open transaction; all statements run through it."""

    def __init__(
        self,
        conn,
        cipher: SecretCipher,
        tenant_id: Optional[str],
        *,
        read_only: bool = False,
        bypass: bool = False,
    ) -> None:
        self._conn = conn
        self._cipher = cipher
        self.tenant_id = tenant_id
        self.read_only = read_only
        self.bypass = bypass
        self.aborted = False
        self.closed = False

    def abort(self) -> None:
        """Roll back on exit instead of committing."""
        self.aborted = True

    def _execute(self, query: str, params: Tuple[Any, ...] = ()):
        if self.closed:
            raise TenantIsolationViolation(
                "scoped transaction used after release", {"tenant_id": self.tenant_id}
            )
        return self._conn.execute(query, params)

    # -- users -------------------------------------------------------------

    def create_user(self, user: User) -> User:
        try:
            row = self._execute(
                f"""
                INSERT INTO users (id, tenant_id, email, password_hash, first_name, last_name,
                                   status, email_verified)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (
                    user.id,
                    user.tenant_id,
                    normalize_email(user.email),
                    user.password_hash,
                    user.first_name,
                    user.last_name,
                    user.status,
                    user.email_verified,
                ),
            ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already registered for tenant", {"email": user.email}
            ) from exc
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
        ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s",
            (normalize_email(email),),
        ).fetchone()
        return _row_to_user(row) if row else None

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        cur = self._execute(
            "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
            (password_hash, user_id),
        )
        if cur.rowcount == 0:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        row = self._execute(
            f"UPDATE users SET status = %s, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
            (status, user_id),
        ).fetchone()
        return _row_to_user(row) if row else None

    def set_email_verified(self, user_id: str, verified: bool = True) -> None:
        self._execute(
            "UPDATE users SET email_verified = %s, updated_at = now() WHERE id = %s",
            (verified, user_id),
        )

    def record_login(self, user_id: str, ip_address: Optional[str]) -> None:
        self._execute(
            "UPDATE users SET last_login_at = now(), last_login_ip = %s WHERE id = %s",
            (parse_ip_address(ip_address), user_id),
        )

    # -- second factor -----------------------------------------------------

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        row = self._execute(
            """
            SELECT id, tenant_id, two_factor_secret, two_factor_backup_codes,
                   two_factor_enabled, two_factor_enabled_at, two_factor_last_step
            FROM users WHERE id = %s
            """,
            (user_id,),
        ).fetchone()
        if not row or not row["two_factor_secret"]:
            return None
        return TwoFactorConfig(
            user_id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            secret=self._cipher.decrypt(row["two_factor_secret"]),
            backup_codes=self._cipher.decrypt_many(row["two_factor_backup_codes"] or []),
            enabled=bool(row["two_factor_enabled"]),
            enabled_at=row["two_factor_enabled_at"],
            last_used_step=int(row["two_factor_last_step"] or 0),
        )

    def save_two_factor(self, config: TwoFactorConfig) -> None:
        cur = self._execute(
            """
            UPDATE users
            SET two_factor_secret = %s,
                two_factor_backup_codes = %s,
                two_factor_enabled = %s,
                two_factor_enabled_at = %s,
                two_factor_last_step = %s,
                updated_at = now()
            WHERE id = %s AND tenant_id = %s
            """,
            (
                self._cipher.encrypt(config.secret),
                self._cipher.encrypt_many(config.backup_codes),
                config.enabled,
                config.enabled_at,
                config.last_used_step,
                config.user_id,
                config.tenant_id,
            ),
        )
        if cur.rowcount == 0:
            raise ConstraintViolation("user not found for 2fa", {"user_id": config.user_id})

    def delete_two_factor(self, user_id: str) -> bool:
        cur = self._execute(
            """
            UPDATE users
            SET two_factor_secret = NULL, two_factor_backup_codes = NULL,
                two_factor_enabled = FALSE, two_factor_enabled_at = NULL,
                two_factor_last_step = 0, updated_at = now()
            WHERE id = %s AND two_factor_secret IS NOT NULL
            """,
            (user_id,),
        )
        return cur.rowcount > 0

    def set_backup_codes(self, user_id: str, codes: List[str]) -> None:
        cur = self._execute(
            """
            UPDATE users SET two_factor_backup_codes = %s, updated_at = now()
            WHERE id = %s AND two_factor_secret IS NOT NULL
            """,
            (self._cipher.encrypt_many(codes), user_id),
        )
        if cur.rowcount == 0:
            raise ConstraintViolation("2fa not configured", {"user_id": user_id})

    def consume_backup_code(self, user_id: str, code: str) -> bool:
        # Row lock serializes concurrent use of the same code
        row = self._execute(
            """
            SELECT two_factor_backup_codes FROM users
            WHERE id = %s AND two_factor_enabled
            FOR UPDATE
            """,
            (user_id,),
        ).fetchone()
        if not row or not row["two_factor_backup_codes"]:
            return False
        stored: List[str] = list(row["two_factor_backup_codes"])
        for idx, encrypted in enumerate(stored):
            if hmac.compare_digest(self._cipher.decrypt(encrypted).encode(), code.encode()):
                del stored[idx]
                self._execute(
                    "UPDATE users SET two_factor_backup_codes = %s, updated_at = now() WHERE id = %s",
                    (stored, user_id),
                )
                return True
        return False

    def advance_totp_step(self, user_id: str, step: int) -> bool:
        row = self._execute(
            """
            UPDATE users SET two_factor_last_step = %s
            WHERE id = %s AND two_factor_last_step < %s
            RETURNING id
            """,
            (step, user_id, step),
        ).fetchone()
        return row is not None

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            row = self._execute(
                f"""
                INSERT INTO sessions (id, tenant_id, user_id, access_token_hash, refresh_token_hash,
                                      device_type, browser, os, ip_address, user_agent,
                                      country_code, city, remember_me, created_at,
                                      last_activity_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_SESSION_COLUMNS}
                """,
                (
                    session.id,
                    session.tenant_id,
                    session.user_id,
                    session.access_token_hash,
                    session.refresh_token_hash,
                    session.device_type,
                    session.browser,
                    session.os,
                    parse_ip_address(session.ip_address),
                    session.user_agent,
                    session.country_code,
                    session.city,
                    session.remember_me,
                    session.created_at,
                    session.last_activity_at,
                    session.expires_at,
                ),
            ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("session exists", {"session_id": session.id}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id}) from exc
        return _row_to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self._execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = %s", (session_id,)
        ).fetchone()
        return _row_to_session(row) if row else None

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_hash: str,
        access_token_hash: str,
        refresh_token_hash: str,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        row = self._execute(
            """
            UPDATE sessions
            SET access_token_hash = %s,
                refresh_token_hash = %s,
                expires_at = COALESCE(%s, expires_at),
                last_activity_at = now()
            WHERE id = %s AND refresh_token_hash = %s AND revoked_at IS NULL
            RETURNING id
            """,
            (access_token_hash, refresh_token_hash, expires_at, session_id, expected_refresh_hash),
        ).fetchone()
        return row is not None

    def touch_session(self, session_id: str, at: Optional[datetime] = None) -> None:
        self._execute(
            "UPDATE sessions SET last_activity_at = %s WHERE id = %s",
            (at or utcnow(), session_id),
        )

    def revoke_session(self, session_id: str) -> bool:
        row = self._execute(
            "UPDATE sessions SET revoked_at = now() WHERE id = %s AND revoked_at IS NULL RETURNING id",
            (session_id,),
        ).fetchone()
        return row is not None

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        if except_session_id:
            cur = self._execute(
                """
                UPDATE sessions SET revoked_at = now()
                WHERE user_id = %s AND revoked_at IS NULL AND id <> %s
                """,
                (user_id, except_session_id),
            )
        else:
            cur = self._execute(
                "UPDATE sessions SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL",
                (user_id,),
            )
        return cur.rowcount

    def revoke_tenant_sessions(self) -> int:
        cur = self._execute("UPDATE sessions SET revoked_at = now() WHERE revoked_at IS NULL")
        return cur.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        rows = self._execute(
            f"""
            SELECT {_SESSION_COLUMNS} FROM sessions
            WHERE user_id = %s
            ORDER BY last_activity_at DESC
            """,
            (user_id,),
        ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cur = self._execute(
            "DELETE FROM sessions WHERE expires_at <= %s OR revoked_at IS NOT NULL",
            (now or utcnow(),),
        )
        return cur.rowcount

    # -- roles -------------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        try:
            row = self._execute(
                f"""
                INSERT INTO roles (id, tenant_id, name, display_name, description, level,
                                   parent_role_id, is_system)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_ROLE_COLUMNS}
                """,
                (
                    role.id,
                    role.tenant_id,
                    role.name,
                    role.display_name,
                    role.description,
                    role.level,
                    role.parent_role_id,
                    role.is_system,
                ),
            ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("role name exists", {"name": role.name}) from exc
        return _row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        row = self._execute(
            f"SELECT {_ROLE_COLUMNS} FROM roles WHERE id = %s", (role_id,)
        ).fetchone()
        return _row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        row = self._execute(
            f"SELECT {_ROLE_COLUMNS} FROM roles WHERE name = %s", (name,)
        ).fetchone()
        return _row_to_role(row) if row else None

    def list_roles(self) -> List[Role]:
        rows = self._execute(
            f"SELECT {_ROLE_COLUMNS} FROM roles ORDER BY level, name"
        ).fetchall()
        return [_row_to_role(r) for r in rows]

    def delete_role(self, role_id: str) -> bool:
        cur = self._execute("DELETE FROM roles WHERE id = %s", (role_id,))
        return cur.rowcount > 0

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        rows = self._execute(
            """
            SELECT p.* FROM role_permissions rp
            JOIN permissions p ON p.id = rp.permission_id
            WHERE rp.role_id = %s
            ORDER BY p.resource, p.action
            """,
            (role_id,),
        ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def _role_tenant(self, role_id: str) -> str:
        row = self._execute("SELECT tenant_id FROM roles WHERE id = %s", (role_id,)).fetchone()
        if not row:
            raise ConstraintViolation("role not found", {"role_id": role_id})
        return str(row["tenant_id"])

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> None:
        tenant_id = self._role_tenant(role_id)
        self._execute("DELETE FROM role_permissions WHERE role_id = %s", (role_id,))
        for permission_id in sorted(set(permission_ids)):
            self._insert_role_permission(tenant_id, role_id, permission_id)

    def _insert_role_permission(self, tenant_id: str, role_id: str, permission_id: str) -> bool:
        try:
            row = self._execute(
                """
                INSERT INTO role_permissions (tenant_id, role_id, permission_id)
                VALUES (%s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING role_id
                """,
                (tenant_id, role_id, permission_id),
            ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "unknown permission", {"permission_id": permission_id}
            ) from exc
        return row is not None

    def add_role_permission(self, role_id: str, permission_id: str) -> bool:
        return self._insert_role_permission(self._role_tenant(role_id), role_id, permission_id)

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        cur = self._execute(
            "DELETE FROM role_permissions WHERE role_id = %s AND permission_id = %s",
            (role_id, permission_id),
        )
        return cur.rowcount > 0

    def assign_role(self, user_id: str, role_id: str) -> bool:
        tenant_id = self._role_tenant(role_id)
        try:
            row = self._execute(
                """
                INSERT INTO user_roles (tenant_id, user_id, role_id)
                VALUES (%s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING role_id
                """,
                (tenant_id, user_id, role_id),
            ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user or role not found", {"user_id": user_id, "role_id": role_id}
            ) from exc
        return row is not None

    def unassign_role(self, user_id: str, role_id: str) -> bool:
        cur = self._execute(
            "DELETE FROM user_roles WHERE user_id = %s AND role_id = %s",
            (user_id, role_id),
        )
        return cur.rowcount > 0

    def get_user_roles(self, user_id: str) -> List[Role]:
        rows = self._execute(
            f"""
            SELECT {", ".join("r." + c.strip() for c in _ROLE_COLUMNS.split(","))}
            FROM user_roles ur
            JOIN roles r ON r.tenant_id = ur.tenant_id AND r.id = ur.role_id
            WHERE ur.user_id = %s
            ORDER BY r.level, r.name
            """,
            (user_id,),
        ).fetchall()
        return [_row_to_role(r) for r in rows]

    def resolve_user_grants(self, user_id: str) -> List[GrantRow]:
        """(role_id, role_name, resource, action) for every held role."""
        rows = self._execute(
            """
            SELECT r.id AS role_id, r.name AS role_name, p.resource, p.action
            FROM user_roles ur
            JOIN roles r ON r.tenant_id = ur.tenant_id AND r.id = ur.role_id
            LEFT JOIN role_permissions rp ON rp.tenant_id = r.tenant_id AND rp.role_id = r.id
            LEFT JOIN permissions p ON p.id = rp.permission_id
            WHERE ur.user_id = %s
            """,
            (user_id,),
        ).fetchall()
        return [
            (str(r["role_id"]), r["role_name"], r["resource"], r["action"]) for r in rows
        ]

    # -- audit -------------------------------------------------------------

    def insert_audit_event(self, event: AuditEvent) -> None:
        self._execute(
            """
            INSERT INTO audit_logs (id, tenant_id, user_id, action, resource_type, resource_id,
                                    status, ip_address, user_agent, metadata, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                event.id,
                event.tenant_id,
                event.user_id,
                event.action,
                event.resource_type,
                event.resource_id,
                event.status,
                parse_ip_address(event.ip_address),
                event.user_agent,
                json.dumps(event.metadata or {}),
                event.created_at,
            ),
        )
