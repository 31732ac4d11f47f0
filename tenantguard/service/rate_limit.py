from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.errors import RateLimited
from tenantguard.storage.common import normalize_email

logger = get_logger(__name__)

LOGIN_SCOPE = "login"
SECOND_FACTOR_SCOPE = "2fa"
LOCAL_PRUNE_INTERVAL_SECONDS = 60


class RateLimiter:
    """Fixed-window attempt counters for login and second-factor checks.

    Every attempt is counted before any credential comparison; success
    resets the subject's counter. When the cache fails a lock-protected
    process-local counter takes over.
    """

    def __init__(
        self,
        cache,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._lock = threading.Lock()
        # (tenant, key) -> (count, window_end)
        self._local: Dict[Tuple[Optional[str], str], Tuple[int, float]] = {}
        self._next_prune = 0.0

    def _local_hit(self, key: str, window_seconds: int, tenant_id: Optional[str]) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            if now >= self._next_prune:
                self._prune_local(now)
            count, window_end = self._local.get((tenant_id, key), (0, 0.0))
            if window_end <= now:
                count, window_end = 0, now + window_seconds
            count += 1
            self._local[(tenant_id, key)] = (count, window_end)
        return count, max(0, int(window_end - now))

    def _prune_local(self, now: float) -> None:
        """Drop closed windows; caller holds the lock."""
        expired = [k for k, (_, window_end) in self._local.items() if window_end <= now]
        for k in expired:
            del self._local[k]
        self._next_prune = now + LOCAL_PRUNE_INTERVAL_SECONDS

    async def hit(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        tenant_id: Optional[str] = None,
    ) -> int:
        """Count one attempt; raise ``RateLimited`` once ``limit`` is exceeded."""
        count: int
        retry_after: int
        if self.cache is not None:
            try:
                count, retry_after = await self.cache.incr_with_expiry(
                    key, window_seconds, tenant_id=tenant_id
                )
            except Exception as exc:
                logger.warning("rate_limit_cache_unavailable", error=str(exc))
                count, retry_after = self._local_hit(key, window_seconds, tenant_id)
        else:
            count, retry_after = self._local_hit(key, window_seconds, tenant_id)
        if count > limit:
            logger.warning(
                "rate_limited",
                scope=key.split(":", 1)[0],
                tenant_id=tenant_id,
                attempts=count,
                retry_after=retry_after,
            )
            raise RateLimited(retry_after=retry_after)
        return count

    async def reset(self, key: str, *, tenant_id: Optional[str] = None) -> None:
        with self._lock:
            self._local.pop((tenant_id, key), None)
        if self.cache is None:
            return
        try:
            await self.cache.reset_counter(key, tenant_id=tenant_id)
        except Exception as exc:
            logger.warning("rate_limit_reset_failed", error=str(exc))

    @staticmethod
    def login_key(email: str) -> str:
        return f"{LOGIN_SCOPE}:{normalize_email(email)}"

    @staticmethod
    def second_factor_key(user_id: str) -> str:
        return f"{SECOND_FACTOR_SCOPE}:{user_id}"

    async def hit_login(self, tenant_id: str, email: str) -> int:
        return await self.hit(
            self.login_key(email),
            limit=self.settings.max_login_attempts,
            window_seconds=self.settings.login_rate_limit_window_seconds,
            tenant_id=tenant_id,
        )

    async def reset_login(self, tenant_id: str, email: str) -> None:
        await self.reset(self.login_key(email), tenant_id=tenant_id)

    async def hit_second_factor(self, tenant_id: str, user_id: str) -> int:
        return await self.hit(
            self.second_factor_key(user_id),
            limit=self.settings.max_2fa_attempts,
            window_seconds=self.settings.two_factor_rate_limit_window_seconds,
            tenant_id=tenant_id,
        )

    async def reset_second_factor(self, tenant_id: str, user_id: str) -> None:
        await self.reset(self.second_factor_key(user_id), tenant_id=tenant_id)
