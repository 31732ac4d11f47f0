from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


def permission_entry_key(tenant_id: str, user_id: str) -> str:
    return f"perm:user:{tenant_id}:{user_id}"


def tenant_generation_key(tenant_id: str) -> str:
    return f"perm:gen:tenant:{tenant_id}"


def role_generation_key(tenant_id: str, role_id: str) -> str:
    return f"perm:gen:role:{tenant_id}:{role_id}"


def user_generation_key(tenant_id: str, user_id: str) -> str:
    return f"perm:gen:user:{tenant_id}:{user_id}"


def trusted_device_key(tenant_id: str, user_id: str, fingerprint: str) -> str:
    return f"trusted_device:{tenant_id}:{user_id}:{fingerprint}"


def trusted_device_index_key(tenant_id: str, user_id: str) -> str:
    return f"trusted_devices:{tenant_id}:{user_id}"


def password_reset_key(token_hash: str) -> str:
    return f"auth:password_reset:{token_hash}"


def email_verification_key(token_hash: str) -> str:
    return f"auth:email_verification:{token_hash}"


def _normalize_rate_key(key: str, tenant_id: Optional[str]) -> str:
    """Generate collision-resistant rate keys.

    Components are hashed to avoid delimiter injection while still
    providing stable keys per logical rate limit subject.
    """

    digest = hashlib.sha256(key.encode()).hexdigest()
    tenant_prefix = f"{tenant_id}:" if tenant_id else ""
    return f"rate:{tenant_prefix}{digest}"


def _decode_json(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted cache entry - treat as cache miss
        return None
    return value if isinstance(value, dict) else None


class RedisCache:
    """Redis wrapper for permission entries, rate counters and short-lived auth state.

    Generation counters are stored without expiry; run Redis with a
    ``noeviction`` or ``volatile-*`` policy so they are never evicted.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window counter: the window starts on the first attempt
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    # -- permission entries ------------------------------------------------

    async def get_permission_entry(self, tenant_id: str, user_id: str) -> Optional[dict]:
        return _decode_json(await self.client.get(permission_entry_key(tenant_id, user_id)))

    async def set_permission_entry(
        self, tenant_id: str, user_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            permission_entry_key(tenant_id, user_id), json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def delete_permission_entry(self, tenant_id: str, user_id: str) -> None:
        await self.client.delete(permission_entry_key(tenant_id, user_id))

    async def get_generations(self, keys: Iterable[str]) -> Dict[str, int]:
        keys = list(keys)
        if not keys:
            return {}
        values = await self.client.mget(keys)
        return {k: int(v) if v is not None else 0 for k, v in zip(keys, values)}

    async def bump_generation(self, key: str) -> int:
        return int(await self.client.incr(key))

    # -- rate counters -----------------------------------------------------

    async def incr_with_expiry(
        self, key: str, window_seconds: int, *, tenant_id: Optional[str] = None
    ) -> Tuple[int, int]:
        """Count one attempt; returns (attempts in window, seconds until reset)."""
        safe_key = _normalize_rate_key(key, tenant_id)
        count, ttl = await self._fixed_window(keys=[safe_key], args=[max(1, window_seconds)])
        return int(count), max(0, int(ttl))

    async def reset_counter(self, key: str, *, tenant_id: Optional[str] = None) -> None:
        await self.client.delete(_normalize_rate_key(key, tenant_id))

    # -- trusted devices ---------------------------------------------------

    async def set_trusted_device(
        self,
        tenant_id: str,
        user_id: str,
        fingerprint: str,
        token_hash: str,
        ttl_seconds: int,
    ) -> None:
        index_key = trusted_device_index_key(tenant_id, user_id)
        pipe = self.client.pipeline()
        pipe.set(trusted_device_key(tenant_id, user_id, fingerprint), token_hash, ex=ttl_seconds)
        pipe.sadd(index_key, fingerprint)
        pipe.expire(index_key, ttl_seconds)
        await pipe.execute()

    async def get_trusted_device(
        self, tenant_id: str, user_id: str, fingerprint: str
    ) -> Optional[str]:
        return await self.client.get(trusted_device_key(tenant_id, user_id, fingerprint))

    async def delete_trusted_devices(self, tenant_id: str, user_id: str) -> int:
        index_key = trusted_device_index_key(tenant_id, user_id)
        fingerprints = await self.client.smembers(index_key)
        pipe = self.client.pipeline()
        for fingerprint in fingerprints:
            pipe.delete(trusted_device_key(tenant_id, user_id, fingerprint))
        pipe.delete(index_key)
        await pipe.execute()
        return len(fingerprints)

    # -- single-use markers ------------------------------------------------

    async def claim_once(self, key: str, ttl_seconds: int) -> bool:
        """True for the first caller only while ``key`` lives."""
        return bool(await self.client.set(key, "1", nx=True, ex=max(1, ttl_seconds)))

    async def set_password_reset(
        self, token_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(password_reset_key(token_hash), json.dumps(payload), ex=ttl_seconds)

    async def pop_password_reset(self, token_hash: str) -> Optional[dict]:
        """Atomically get and delete a reset record so it can be used once."""
        return _decode_json(await self.client.getdel(password_reset_key(token_hash)))

    async def set_email_verification(
        self, token_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(email_verification_key(token_hash), json.dumps(payload), ex=ttl_seconds)

    async def pop_email_verification(self, token_hash: str) -> Optional[dict]:
        return _decode_json(await self.client.getdel(email_verification_key(token_hash)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemoryCache:
    """Process-local stand-in for ``RedisCache`` used in tests and dev fallback.

    Same async surface and key layout; expiry is evaluated lazily on read
    against ``clock`` so tests can move time forward.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _get(self, key: str) -> Any:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._values[key] = (value, expires_at)

    def _ttl(self, key: str) -> int:
        entry = self._values.get(key)
        if entry is None or entry[1] is None:
            return -1
        return max(0, int(round(entry[1] - self._clock())))

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def get_permission_entry(self, tenant_id: str, user_id: str) -> Optional[dict]:
        with self._lock:
            return _decode_json(self._get(permission_entry_key(tenant_id, user_id)))

    async def set_permission_entry(
        self, tenant_id: str, user_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(
                permission_entry_key(tenant_id, user_id), json.dumps(payload), max(1, ttl_seconds)
            )

    async def delete_permission_entry(self, tenant_id: str, user_id: str) -> None:
        with self._lock:
            self._values.pop(permission_entry_key(tenant_id, user_id), None)

    async def get_generations(self, keys: Iterable[str]) -> Dict[str, int]:
        with self._lock:
            return {k: int(self._get(k) or 0) for k in keys}

    async def bump_generation(self, key: str) -> int:
        with self._lock:
            value = int(self._get(key) or 0) + 1
            self._set(key, value)
            return value

    async def incr_with_expiry(
        self, key: str, window_seconds: int, *, tenant_id: Optional[str] = None
    ) -> Tuple[int, int]:
        safe_key = _normalize_rate_key(key, tenant_id)
        with self._lock:
            current = self._get(safe_key)
            if current is None:
                self._set(safe_key, 1, max(1, window_seconds))
                return 1, max(1, window_seconds)
            expires_at = self._values[safe_key][1]
            self._values[safe_key] = (current + 1, expires_at)
            return current + 1, self._ttl(safe_key)

    async def reset_counter(self, key: str, *, tenant_id: Optional[str] = None) -> None:
        with self._lock:
            self._values.pop(_normalize_rate_key(key, tenant_id), None)

    async def set_trusted_device(
        self,
        tenant_id: str,
        user_id: str,
        fingerprint: str,
        token_hash: str,
        ttl_seconds: int,
    ) -> None:
        index_key = trusted_device_index_key(tenant_id, user_id)
        with self._lock:
            self._set(trusted_device_key(tenant_id, user_id, fingerprint), token_hash, ttl_seconds)
            members = set(self._get(index_key) or ())
            members.add(fingerprint)
            self._set(index_key, members, ttl_seconds)

    async def get_trusted_device(
        self, tenant_id: str, user_id: str, fingerprint: str
    ) -> Optional[str]:
        with self._lock:
            return self._get(trusted_device_key(tenant_id, user_id, fingerprint))

    async def delete_trusted_devices(self, tenant_id: str, user_id: str) -> int:
        index_key = trusted_device_index_key(tenant_id, user_id)
        with self._lock:
            fingerprints: List[str] = list(self._get(index_key) or ())
            for fingerprint in fingerprints:
                self._values.pop(trusted_device_key(tenant_id, user_id, fingerprint), None)
            self._values.pop(index_key, None)
            return len(fingerprints)

    async def claim_once(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._get(key) is not None:
                return False
            self._set(key, "1", max(1, ttl_seconds))
            return True

    async def set_password_reset(
        self, token_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(password_reset_key(token_hash), json.dumps(payload), ttl_seconds)

    async def pop_password_reset(self, token_hash: str) -> Optional[dict]:
        key = password_reset_key(token_hash)
        with self._lock:
            raw = self._get(key)
            self._values.pop(key, None)
        return _decode_json(raw)

    async def set_email_verification(
        self, token_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(email_verification_key(token_hash), json.dumps(payload), ttl_seconds)

    async def pop_email_verification(self, token_hash: str) -> Optional[dict]:
        key = email_verification_key(token_hash)
        with self._lock:
            raw = self._get(key)
            self._values.pop(key, None)
        return _decode_json(raw)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
