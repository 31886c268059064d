from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authgate.logging import get_logger
from authgate.storage.errors import StorageUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for the login rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: INCR, arm the expiry on the first hit, report count and ttl.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('EXPIRE', key, window)
end
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
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

    @staticmethod
    def _normalize_rate_key(key: str, scope: Optional[str] = None) -> str:
        """Hash the subject so client-supplied text cannot collide with other keys."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        scope_prefix = f"{scope}:" if scope else ""
        return f"rate:{scope_prefix}{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def incr_window(
        self, key: str, window_seconds: int, *, scope: Optional[str] = None
    ) -> Tuple[int, int]:
        """Count one hit against ``key`` and return ``(count, seconds_until_reset)``."""

        safe_key = self._normalize_rate_key(key, scope)
        try:
            count, ttl = await self._fixed_window(
                keys=[safe_key], args=[int(window_seconds)]
            )
        except RedisError as exc:
            logger.error("redis_rate_counter_failed", error=str(exc))
            raise StorageUnavailable("rate counter unavailable") from exc
        return int(count), max(0, int(ttl))

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable surface.

    Useful from scripts and tests where the async client would otherwise be
    bound to an event loop that is torn down between calls.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def incr_window(
        self, key: str, window_seconds: int, *, scope: Optional[str] = None
    ) -> Tuple[int, int]:
        safe_key = RedisCache._normalize_rate_key(key, scope)
        try:
            count, ttl = self._fixed_window(keys=[safe_key], args=[int(window_seconds)])
        except RedisError as exc:
            logger.error("redis_rate_counter_failed", error=str(exc))
            raise StorageUnavailable("rate counter unavailable") from exc
        return int(count), max(0, int(ttl))

    def disconnect(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        self.disconnect()
