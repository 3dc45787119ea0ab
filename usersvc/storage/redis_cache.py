from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from usersvc.logging import get_logger
from usersvc.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Redis wrapper for token revocations and fixed-window rate counters."""

    # Atomic fixed window: the first hit in a window starts the expiry clock
    _FIXED_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate subjects so client-controlled input never shapes the key."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit_fixed_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one request against ``key``; return ``(count, ms_until_reset)``."""
        try:
            count, ttl_ms = await self._fixed_window(
                keys=[self._normalize_rate_key(key)],
                args=[int(window_seconds * 1000)],
            )
        except RedisError as exc:
            logger.error("redis_rate_limit_failed", error=str(exc))
            raise StoreUnavailable("rate limit store unavailable", operation="rate_limit") from exc
        return int(count), int(ttl_ms)

    async def add_revocation(
        self, fingerprint: str, meta: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        """Record a revocation; returns False when it was already present."""
        try:
            created = await self.client.set(
                f"auth:revoked:{fingerprint}",
                json.dumps(meta),
                ex=max(1, int(ttl_seconds)),
                nx=True,
            )
        except RedisError as exc:
            logger.error("redis_revocation_write_failed", error=str(exc))
            raise StoreUnavailable("revocation store unavailable", operation="revoke") from exc
        return bool(created)

    async def get_revocation(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(f"auth:revoked:{fingerprint}")
        except RedisError as exc:
            logger.error("redis_revocation_read_failed", error=str(exc))
            raise StoreUnavailable("revocation store unavailable", operation="is_revoked") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("revocation_meta_corrupt", fingerprint_prefix=fingerprint[:12])
            return {}
