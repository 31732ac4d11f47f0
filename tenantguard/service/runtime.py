from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher

from tenantguard.config import Settings, get_settings
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditEmitter, AuditSink, LoggingAuditSink, StoreAuditSink
from tenantguard.service.auth import AuthService
from tenantguard.service.credentials import CredentialVerifier
from tenantguard.service.email import EmailService, Notifier
from tenantguard.service.permissions import PermissionService
from tenantguard.service.provisioning import ProvisioningService
from tenantguard.service.rate_limit import RateLimiter
from tenantguard.service.roles import RoleService
from tenantguard.service.sessions import SessionService
from tenantguard.service.tenancy import AuthStore, TenantGate
from tenantguard.service.tokens import TokenService
from tenantguard.service.two_factor import SecondFactorService
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.postgres import PostgresStore
from tenantguard.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Builds the store, cache and service graph from settings.

    Each caller owns its Runtime; collaborators may be injected for tests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        cache=None,
        notifier: Optional[Notifier] = None,
        audit_sinks: Optional[list[AuditSink]] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.gate = TenantGate(self.store)
        sinks = audit_sinks if audit_sinks is not None else [
            LoggingAuditSink(),
            StoreAuditSink(self.gate),
        ]
        self.audit = AuditEmitter(sinks)
        self.tokens = TokenService(self.settings)
        self.rate_limiter = RateLimiter(self.cache, self.settings)
        self.verifier = CredentialVerifier(
            self.store, self.gate, self.tokens, self.rate_limiter, hasher=hasher
        )
        self.sessions = SessionService(
            self.store, self.gate, self.tokens, self.settings, audit=self.audit
        )
        self.two_factor = SecondFactorService(
            self.gate, self.cache, self.rate_limiter, self.settings, audit=self.audit
        )
        self.permissions = PermissionService(self.gate, self.cache, self.settings)
        self.roles = RoleService(self.store, self.gate, self.permissions, audit=self.audit)
        self.email = notifier if notifier is not None else EmailService.from_settings(self.settings)
        self.provisioning = ProvisioningService(
            self.store,
            self.gate,
            self.verifier,
            self.permissions,
            self.settings,
            cache=self.cache,
            notifier=self.email,
            audit=self.audit,
        )
        self.auth = AuthService(
            self.store,
            self.gate,
            self.cache,
            self.settings,
            verifier=self.verifier,
            sessions=self.sessions,
            two_factor=self.two_factor,
            tokens=self.tokens,
            rate_limiter=self.rate_limiter,
            notifier=self.email,
            audit=self.audit,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            email_configured=getattr(self.email, "is_configured", False),
        )

    def _build_store(self) -> AuthStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(encryption_key=self.settings.encryption_key)
            else:
                if not self.settings.encryption_key:
                    raise RuntimeError("ENCRYPTION_KEY is required for the postgres store")
                store = PostgresStore(
                    self.settings.database_url, encryption_key=self.settings.encryption_key
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for permission caching, rate limits and trusted devices; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limits, trusted devices "
                "and the permission cache are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        """Flush pending audit events and release the cache and store."""
        await self.audit.drain()
        try:
            await self.cache.close()
        except Exception as exc:
            logger.warning("runtime_cache_close_failed", error=str(exc))
        self.store.close()
        logger.info("runtime_closed")
