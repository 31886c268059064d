from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from authgate.logging import get_logger
from authgate.metrics import metrics
from authgate.service.errors import UnavailableError, ValidationError
from authgate.storage.errors import StorageUnavailable
from authgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class Admission:
    allowed: bool
    remaining: int
    reset_seconds: int
    limit: int


class RateGuard:
    """Fixed-window admission control keyed by an arbitrary subject.

    With a cache the counter lives in Redis and is shared by every process.
    Without one the guard keeps per-process windows, which is only permitted
    when ``allow_local`` is set (test mode or the explicit dev fallback).
    A counter failure rejects the request rather than admitting it.
    """

    def __init__(
        self,
        cache: RedisCache | SyncRedisCache | None,
        *,
        allow_local: bool = False,
        clock: Optional[Callable[[], float]] = None,
        scope: str = "login",
    ) -> None:
        if cache is None and not allow_local:
            raise RuntimeError("rate guard needs Redis unless local fallback is allowed")
        self.cache = cache
        self.scope = scope
        self._clock = clock or time.monotonic
        self._local_windows: Dict[str, Tuple[int, float]] = {}
        self._local_lock = asyncio.Lock()

    async def admit(self, key: str, window_seconds: int, limit: int) -> Admission:
        if limit <= 0 or window_seconds <= 0:
            raise ValidationError("rate limit and window must be positive")
        if self.cache is not None:
            try:
                count, reset_seconds = await self.cache.incr_window(
                    key, window_seconds, scope=self.scope
                )
            except StorageUnavailable as exc:
                raise UnavailableError("rate limiter unavailable") from exc
        else:
            count, reset_seconds = await self._admit_local(key, window_seconds)

        allowed = count <= limit
        if not allowed:
            metrics.inc("rate_limited_total", {"scope": self.scope})
            logger.info("rate_limit_exceeded", scope=self.scope, count=count, limit=limit)
        return Admission(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_seconds=reset_seconds,
            limit=limit,
        )

    async def _admit_local(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = self._clock()
        async with self._local_lock:
            count, started = self._local_windows.get(key, (0, now))
            if now - started >= window_seconds:
                count, started = 0, now
            count += 1
            self._local_windows[key] = (count, started)
            self._sweep(now, window_seconds)
        reset_seconds = max(0, math.ceil(started + window_seconds - now))
        return count, reset_seconds

    def _sweep(self, now: float, window_seconds: int) -> None:
        if len(self._local_windows) < 10000:
            return
        expired = [
            k for k, (_, started) in self._local_windows.items()
            if now - started >= window_seconds
        ]
        for k in expired:
            self._local_windows.pop(k, None)
