from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from usersvc.logging import get_logger
from usersvc.service.errors import StoreUnavailableError
from usersvc.service.tokens import Clock
from usersvc.storage.errors import StoreUnavailable
from usersvc.storage.models import utcnow
from usersvc.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_MAX_LOCAL_WINDOWS = 10_000


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    @property
    def retry_after(self) -> int:
        return max(1, self.reset_seconds)


class RateLimiter:
    """Fixed-window request counter for one policy.

    Exactly ``max_requests`` hits per key succeed inside a window; the window
    starts at the first hit and the count resets once it elapses. Counters
    live in Redis when configured, otherwise in this process.
    """

    def __init__(
        self,
        policy: RateLimitPolicy,
        cache: Optional[RedisCache] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.policy = policy
        self.cache = cache
        self.clock: Clock = clock or utcnow
        self._windows: Dict[str, Tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()

    def _subject(self, key: str) -> str:
        return f"{self.policy.name}:{key}"

    async def hit(self, key: str) -> RateLimitDecision:
        limit = self.policy.max_requests
        if self.cache is not None:
            try:
                count, ttl_ms = await self.cache.hit_fixed_window(
                    self._subject(key), self.policy.window_seconds
                )
            except StoreUnavailable as exc:
                raise StoreUnavailableError("rate limit store unavailable") from exc
            reset_seconds = math.ceil(ttl_ms / 1000)
        else:
            count, reset_seconds = await self._hit_local(self._subject(key))
        allowed = count <= limit
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                policy=self.policy.name,
                limit=limit,
                window_seconds=self.policy.window_seconds,
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=reset_seconds,
        )

    async def allow(self, key: str) -> bool:
        return (await self.hit(key)).allowed

    async def _hit_local(self, subject: str) -> Tuple[int, int]:
        now = self.clock()
        window = timedelta(seconds=self.policy.window_seconds)
        async with self._lock:
            count, started = self._windows.get(subject, (0, now))
            if now - started >= window:
                count, started = 0, now
            count += 1
            self._windows[subject] = (count, started)
            if len(self._windows) > _MAX_LOCAL_WINDOWS:
                self._drop_elapsed(now, window)
        reset_seconds = math.ceil((started + window - now).total_seconds())
        return count, reset_seconds

    def _drop_elapsed(self, now: datetime, window: timedelta) -> None:
        stale = [key for key, (_, started) in self._windows.items() if now - started >= window]
        for key in stale:
            self._windows.pop(key, None)
