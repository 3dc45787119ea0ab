from __future__ import annotations

import asyncio
from typing import Optional, Set

from usersvc.logging import get_logger
from usersvc.service.store_calls import call_store
from usersvc.service.tokens import Clock
from usersvc.storage.models import utcnow

logger = get_logger(__name__)


class ActivityRecorder:
    """Fire-and-forget ``last_active_at`` updates for authenticated requests.

    The request never waits for the write and never fails because of it;
    failures are logged. Pending writes are tracked so shutdown can drain them.
    """

    def __init__(self, store, *, timeout_seconds: float, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.clock: Clock = clock or utcnow
        self._pending: Set[asyncio.Task] = set()

    def schedule(self, user_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._touch(user_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _touch(self, user_id: str) -> None:
        try:
            await call_store(
                self.timeout_seconds, self.store.touch_last_active, user_id, self.clock()
            )
        except Exception as exc:
            logger.warning(
                "last_active_update_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
