from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from clinicgate.config import Settings, get_settings, reset_settings_cache
from clinicgate.logging import get_logger
from clinicgate.service.accounts import AccountService
from clinicgate.service.audit import AuditTrail
from clinicgate.service.guard import AuthorizationGuard
from clinicgate.service.tokens import TokenIssuer
from clinicgate.storage.memory import MemoryStore
from clinicgate.storage.postgres import PostgresStore
from clinicgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _redact_dsn(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL before it reaches the logs."""
    if not url:
        return url
    parts = urlsplit(url)
    if not parts.password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(parts._replace(netloc=f"{parts.username or ''}:***@{host}"))


def _build_store(settings: Settings):
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(settings.database_url)


def _build_cache(settings: Settings):
    """Connect to Redis, or return None where running without it is allowed."""
    failure: Exception | None = None
    if settings.redis_url:
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc
    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for shared login lockout and rate limits; "
            "set TEST_MODE or ALLOW_REDIS_FALLBACK_DEV to run without it"
        ) from failure
    logger.warning(
        "redis_unavailable_using_local_state",
        redis_url=_redact_dsn(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
    )
    return None


class Runtime:
    """Process-wide wiring of settings, store, cache and services."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.cache = _build_cache(self.settings)

        self.audit = AuditTrail(self.store, self.settings)
        self.issuer = TokenIssuer(self.store, self.audit, self.settings)
        self.guard = AuthorizationGuard(self.issuer, self.audit)
        self.accounts = AccountService(self.store, self.audit, self.cache, self.settings)

        # key -> (tokens left, last refill) when Redis is absent
        self._local_buckets: Dict[str, Tuple[float, float]] = {}
        self._local_buckets_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            test_mode=self.settings.test_mode,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment. TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> bool:
    """Take one token from the bucket for ``key``; False when it is empty."""
    if limit <= 0:
        return True
    window_seconds = window_seconds if window_seconds > 0 else 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)
    now = time.monotonic()
    with runtime._local_buckets_lock:
        level, at = runtime._local_buckets.get(key, (float(limit), now))
        level = min(float(limit), level + (now - at) * limit / window_seconds)
        allowed = level >= 1
        if allowed:
            level -= 1
        runtime._local_buckets[key] = (level, now)
    return allowed
