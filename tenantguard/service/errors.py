from __future__ import annotations

from typing import Optional

from tenantguard.storage.errors import TenantIsolationViolation


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer transport layer can map them without
    inspecting messages:
    - unauthorized (401)
    - second_factor_required (401)
    - forbidden / tenant_suspended / tenant_unverified (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthenticationFailed(AuthenticationError):
    """Generic credential or token failure.

    The message never says which check failed.
    """

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SecondFactorInvalid(AuthenticationError):
    """A TOTP or backup code did not verify (401)."""

    def __init__(self, message: str = "invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class SessionRevokedOrExpired(SessionExpiredError):
    """The session behind a token is revoked, expired or idle (401)."""

    def __init__(self, message: str = "session is no longer valid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SecondFactorRequired(ServiceError):
    """Control-flow signal: the caller holds a pending second-factor token."""
    status_code = 401
    error_code = "second_factor_required"

    def __init__(
        self, message: str = "second factor verification required", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PermissionDenied(ForbiddenError):
    """Principal lacks the requested resource.action grant (403)."""
    pass


class TenantSuspended(ForbiddenError):
    """Tenant is suspended or canceled; no sessions may be issued (403)."""
    error_code = "tenant_suspended"


class TenantUnverified(ForbiddenError):
    """Tenant has not completed verification (403)."""
    error_code = "tenant_unverified"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class RateLimited(RateLimitedError):
    """Too many attempts for a login or second-factor subject."""

    def __init__(self, message: str = "too many attempts", *, retry_after: int = 0, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthenticationFailed",
    "SecondFactorInvalid",
    "SecondFactorRequired",
    "SessionExpiredError",
    "SessionRevokedOrExpired",
    "ForbiddenError",
    "PermissionDenied",
    "TenantSuspended",
    "TenantUnverified",
    "TenantIsolationViolation",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "RateLimited",
    "ServerError",
]
