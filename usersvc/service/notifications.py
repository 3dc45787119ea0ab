from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Protocol

from usersvc.logging import get_logger
from usersvc.storage.models import CredentialRecord

logger = get_logger(__name__)


class ResetNotifier(Protocol):
    """Delivers a password-reset token to the account owner."""

    async def send_password_reset(
        self, record: CredentialRecord, token: str, expires_at: datetime
    ) -> None: ...


class LoggingResetNotifier:
    """Default notifier: records that a reset was issued, never the token itself.

    Mail delivery is deployment-specific; plug a real notifier into
    ``create_app``/``Runtime`` to send the message.
    """

    async def send_password_reset(
        self, record: CredentialRecord, token: str, expires_at: datetime
    ) -> None:
        logger.info(
            "password_reset_issued",
            user_id=record.id,
            email_hash=hashlib.sha256(record.email.encode()).hexdigest(),
            expires_at=expires_at.isoformat(),
        )
