"""Common storage utilities shared between memory and postgres implementations.

Keeps secret encryption, identifier validation and the seed catalog in one
place so both backends behave identically.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from ipaddress import ip_address
from typing import Any, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from tenantguard.logging import get_logger
from tenantguard.storage.errors import TenantIsolationViolation

logger = get_logger(__name__)


# ============================================================================
# SECRET ENCRYPTION - second-factor secrets and backup codes at rest
# ============================================================================


class SecretCipher:
    """Fernet wrapper keyed from arbitrary key material."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Encryption key material is required")
        try:
            self._fernet = Fernet(self.derive_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize secret cipher") from exc

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: str) -> str:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            # A wrong key must not silently yield ciphertext as a usable secret
            logger.error("secret_decrypt_failed")
            raise RuntimeError("Unable to decrypt stored secret") from exc

    def encrypt_many(self, values: List[str]) -> List[str]:
        return [self.encrypt(v) for v in values]

    def decrypt_many(self, values: List[str]) -> List[str]:
        return [self.decrypt(v) for v in values]


# ============================================================================
# IDENTIFIERS
# ============================================================================


def validate_tenant_id(tenant_id: Any) -> str:
    """Return the canonical form of a tenant id or raise TenantIsolationViolation.

    The isolation parameter is only ever set to a well-formed UUID.
    """
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise TenantIsolationViolation(
            "tenant id missing for scoped transaction", {"tenant_id": repr(tenant_id)}
        )
    try:
        return str(uuid.UUID(tenant_id.strip()))
    except ValueError as exc:
        raise TenantIsolationViolation(
            "malformed tenant id for scoped transaction", {"tenant_id": tenant_id}
        ) from exc


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def parse_ip_address(raw_ip: Any) -> Optional[Any]:
    """Parse IP address from various formats.

    Args:
        raw_ip: Raw IP address value (string, object, or None)

    Returns:
        Parsed IP address object or None
    """
    if isinstance(raw_ip, str):
        stripped = raw_ip.strip()
        if stripped:
            return ip_address(stripped)
        return None
    return raw_ip


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


# ============================================================================
# SEED DATA - global permission catalog and per-tenant system roles
# ============================================================================

# (resource, action, display_name, category)
DEFAULT_PERMISSIONS: List[Tuple[str, str, str, str]] = [
    ("users", "view", "View Users", "User Management"),
    ("users", "create", "Create Users", "User Management"),
    ("users", "edit", "Edit Users", "User Management"),
    ("users", "delete", "Delete Users", "User Management"),
    ("users", "manage_status", "Manage User Status", "User Management"),
    ("users", "*", "All User Permissions", "User Management"),
    ("roles", "view", "View Roles", "Access Control"),
    ("roles", "create", "Create Roles", "Access Control"),
    ("roles", "edit", "Edit Roles", "Access Control"),
    ("roles", "delete", "Delete Roles", "Access Control"),
    ("roles", "assign", "Assign Roles", "Access Control"),
    ("roles", "*", "All Role Permissions", "Access Control"),
    ("settings", "view", "View Settings", "Settings"),
    ("settings", "edit", "Edit Settings", "Settings"),
    ("settings", "*", "All Settings Permissions", "Settings"),
    ("security", "view_logs", "View Security Logs", "Security"),
    ("security", "view_sessions", "View Sessions", "Security"),
    ("security", "manage_sessions", "Manage Sessions", "Security"),
    ("security", "*", "All Security Permissions", "Security"),
]


def _owner_grants(resource: str, action: str) -> bool:
    return action == "*"


def _admin_grants(resource: str, action: str) -> bool:
    # Wildcards would imply delete
    return resource in {"users", "roles", "settings"} and action not in {"delete", "*"}


def _manager_grants(resource: str, action: str) -> bool:
    return (resource == "users" and action in {"view", "edit"}) or (
        resource == "settings" and action == "view"
    )


def _user_grants(resource: str, action: str) -> bool:
    return action == "view"


SYSTEM_ROLES: List[Dict[str, Any]] = [
    {
        "name": "owner",
        "display_name": "Owner",
        "description": "Full system access - all permissions",
        "level": 0,
        "grants": _owner_grants,
    },
    {
        "name": "admin",
        "display_name": "Administrator",
        "description": "Administrative access - manage users, roles, settings",
        "level": 1,
        "grants": _admin_grants,
    },
    {
        "name": "manager",
        "display_name": "Manager",
        "description": "View and manage team members",
        "level": 2,
        "grants": _manager_grants,
    },
    {
        "name": "user",
        "display_name": "User",
        "description": "Basic user access - view only",
        "level": 3,
        "grants": _user_grants,
    },
]
