from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from usersvc.logging import get_logger
from usersvc.service.errors import StoreUnavailableError
from usersvc.service.store_calls import call_store
from usersvc.service.tokens import Clock, token_fingerprint
from usersvc.storage.errors import StoreUnavailable
from usersvc.storage.models import RevocationEntry, utcnow
from usersvc.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RevocationRegistry:
    """Denylist of tokens that must stop working before their natural expiry.

    Entries are keyed by the SHA-256 fingerprint of the raw token. With Redis
    configured they live there under a TTL equal to the token's remaining
    lifetime; otherwise they go to the credential store and are removed by
    :meth:`purge_expired`. Writes are visible to the next read on the same
    backend.
    """

    def __init__(
        self,
        store,
        cache: Optional[RedisCache],
        *,
        max_token_lifetime: timedelta,
        timeout_seconds: float,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.max_token_lifetime = max_token_lifetime
        self.timeout_seconds = timeout_seconds
        self.clock: Clock = clock or utcnow

    async def revoke(
        self,
        token: str,
        user_id: str,
        reason: str = "logout",
        *,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Revoke ``token``. Returns False if it was already revoked; never raises for that."""
        now = self.clock()
        expires_at = expires_at or now + self.max_token_lifetime
        fingerprint = token_fingerprint(token)
        if self.cache is not None:
            ttl_seconds = int((expires_at - now).total_seconds())
            try:
                created = await self.cache.add_revocation(
                    fingerprint,
                    {
                        "userId": user_id,
                        "reason": reason,
                        "revokedAt": now.isoformat(),
                        "expiresAt": expires_at.isoformat(),
                    },
                    ttl_seconds,
                )
            except StoreUnavailable as exc:
                raise StoreUnavailableError("revocation store unavailable") from exc
        else:
            entry = RevocationEntry(
                fingerprint=fingerprint,
                user_id=user_id,
                reason=reason,
                revoked_at=now,
                expires_at=expires_at,
            )
            created = await call_store(
                self.timeout_seconds, self.store.add_revocation, entry
            )
        if created:
            logger.info(
                "token_revoked",
                user_id=user_id,
                reason=reason,
                fingerprint_prefix=fingerprint[:12],
            )
        return created

    async def is_revoked(self, token: str) -> bool:
        fingerprint = token_fingerprint(token)
        if self.cache is not None:
            try:
                return await self.cache.get_revocation(fingerprint) is not None
            except StoreUnavailable as exc:
                raise StoreUnavailableError("revocation store unavailable") from exc
        entry = await call_store(
            self.timeout_seconds, self.store.get_revocation, fingerprint
        )
        return entry is not None

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop entries older than the longest token lifetime.

        Redis entries expire on their own, so this only touches the store.
        """
        if self.cache is not None:
            return 0
        cutoff = (now or self.clock()) - self.max_token_lifetime
        purged = await call_store(
            self.timeout_seconds, self.store.purge_revocations, cutoff
        )
        if purged:
            logger.info("revocations_purged", count=purged, cutoff=cutoff.isoformat())
        return purged
