from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from usersvc.logging import get_logger
from usersvc.service.store_calls import call_store
from usersvc.service.tokens import Clock
from usersvc.storage.common import ensure_utc
from usersvc.storage.models import CredentialRecord, utcnow

logger = get_logger(__name__)


class LockoutPolicy:
    """Account-level lock after repeated failed logins.

    The counters live on the credential record and are changed only through
    the store's atomic ``record_failed_login``/``reset_login_attempts``. An
    elapsed ``account_locked_until`` counts as unlocked; it is cleared the
    next time a failure or success is recorded.
    """

    def __init__(
        self,
        store,
        *,
        threshold: int = 5,
        lock_duration: timedelta = timedelta(hours=2),
        timeout_seconds: float = 5.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_duration = lock_duration
        self.timeout_seconds = timeout_seconds
        self.clock: Clock = clock or utcnow

    def is_locked(self, record: CredentialRecord, now: Optional[datetime] = None) -> bool:
        locked_until = ensure_utc(record.account_locked_until)
        return locked_until is not None and locked_until > (now or self.clock())

    async def is_user_locked(self, user_id: str) -> bool:
        record = await call_store(self.timeout_seconds, self.store.get_user, user_id)
        return record is not None and self.is_locked(record)

    async def record_failed_attempt(self, user_id: str) -> Optional[CredentialRecord]:
        now = self.clock()
        record = await call_store(
            self.timeout_seconds,
            self.store.record_failed_login,
            user_id,
            now,
            threshold=self.threshold,
            lock_duration=self.lock_duration,
        )
        if record is None:
            return None
        if self.is_locked(record, now):
            if record.failed_login_attempts == self.threshold:
                logger.warning(
                    "account_locked",
                    user_id=user_id,
                    attempts=record.failed_login_attempts,
                    locked_until=record.account_locked_until.isoformat(),
                )
        else:
            logger.info(
                "login_failure_recorded",
                user_id=user_id,
                attempts=record.failed_login_attempts,
            )
        return record

    async def record_success(self, user_id: str) -> None:
        await call_store(
            self.timeout_seconds, self.store.reset_login_attempts, user_id, self.clock()
        )
