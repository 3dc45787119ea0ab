from __future__ import annotations

from typing import Optional

from usersvc.config import Settings
from usersvc.logging import get_logger
from usersvc.service.errors import (
    ConflictError,
    ExternalAuthAccountError,
    InvalidCurrentPasswordError,
    UserNotFoundError,
    ValidationError,
)
from usersvc.service.passwords import PasswordService
from usersvc.service.revocation import RevocationRegistry
from usersvc.service.store_calls import call_store
from usersvc.service.verifier import Principal
from usersvc.storage.errors import ConstraintViolation
from usersvc.storage.models import CredentialRecord

logger = get_logger(__name__)


class UserService:
    """Operations on the caller's own account."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        passwords: PasswordService,
        registry: RevocationRegistry,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.registry = registry
        self.timeout = settings.store_timeout_seconds

    async def get_profile(self, principal: Principal) -> CredentialRecord:
        return principal.record

    async def update_profile(
        self,
        principal: Principal,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> CredentialRecord:
        if name is None and email is None:
            raise ValidationError(message_key="validation.at_least_one_field")
        try:
            record = await call_store(
                self.timeout, self.store.update_profile, principal.id, name=name, email=email
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        if record is None:
            raise UserNotFoundError()
        logger.info(
            "profile_updated",
            user_id=principal.id,
            fields=[field for field, value in (("name", name), ("email", email)) if value is not None],
        )
        return record

    async def change_password(
        self, principal: Principal, current_password: str, new_password: str
    ) -> None:
        record = principal.record
        if not record.password_hash:
            raise ExternalAuthAccountError()
        if not await self.passwords.verify(record.password_hash, current_password):
            logger.warning("password_change_rejected", user_id=principal.id)
            raise InvalidCurrentPasswordError()
        if new_password == current_password:
            raise ValidationError(message_key="validation.same_as_current")
        password_hash = await self.passwords.hash(new_password)
        if not await call_store(self.timeout, self.store.save_password, principal.id, password_hash):
            raise UserNotFoundError()
        logger.info("password_changed", user_id=principal.id)

    async def delete_account(self, principal: Principal, password: Optional[str]) -> None:
        """Erase the account for good after re-checking the password."""
        record = principal.record
        if record.password_hash:
            if not password or not await self.passwords.verify(record.password_hash, password):
                logger.warning("account_deletion_rejected", user_id=principal.id)
                raise InvalidCurrentPasswordError()
        if not await call_store(self.timeout, self.store.delete_user, principal.id):
            raise UserNotFoundError()
        if principal.token:
            await self.registry.revoke(
                principal.token,
                principal.id,
                "account_deleted",
                expires_at=principal.claims.expires_at if principal.claims else None,
            )
        logger.info("account_deleted", user_id=principal.id)
