from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TenantIsolationViolation(Exception):
    """The isolation context could not be established or a row crossed tenants.

    Never recoverable locally: the request must abort.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """The backing store could not be reached."""


__all__ = ["ConstraintViolation", "StorageUnavailable", "TenantIsolationViolation"]
