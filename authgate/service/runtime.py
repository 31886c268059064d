from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.auth import AuthService, AuthStore
from authgate.service.gate import AuthGate
from authgate.service.rate_guard import RateGuard
from authgate.service.tokens import TokenCodec
from authgate.storage.memory import MemoryStore
from authgate.storage.postgres import PostgresStore
from authgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL before it is logged.

    ``redis://:hunter2@cache:6379/0`` becomes ``redis://:***@cache:6379/0``.
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***"
    if not parsed.password:
        return url
    host = parsed.hostname or ""
    if port:
        host = f"{host}:{port}"
    return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


class Runtime:
    """Holds singleton service instances for the transports."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: AuthStore = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    pool_size=self.settings.storage_pool_size,
                    timeout_seconds=self.settings.storage_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to short-lived loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc
                self.cache = None

        fallback_allowed = self.settings.test_mode or self.settings.allow_redis_fallback_dev
        if not self.cache:
            if not fallback_allowed:
                raise RuntimeError(
                    "Redis is required for login rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; login rate limits "
                    "are per-process only."
                ),
                mode=fallback_mode,
            )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            self.settings.access_token_ttl_minutes * 60,
        )
        self.rate_guard = RateGuard(self.cache, allow_local=fallback_allowed)
        self.auth = AuthService(self.store, self.codec, self.rate_guard, self.settings)
        self.gate = AuthGate(self.codec)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_days=self.settings.refresh_token_ttl_days,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.disconnect()
        runtime = Runtime()
        return runtime
