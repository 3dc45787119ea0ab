from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from usersvc.service.errors import (
    AccountLockedError,
    MissingTokenError,
    TokenRevokedError,
    UserNotFoundError,
)
from usersvc.service.lockout import LockoutPolicy
from usersvc.service.revocation import RevocationRegistry
from usersvc.service.store_calls import call_store
from usersvc.service.tokens import ACCESS, TokenClaims, TokenIssuer
from usersvc.storage.models import CredentialRecord


@dataclass
class Principal:
    """Authenticated identity attached to a request."""

    id: str
    email: str
    name: str
    auth_provider: str
    record: CredentialRecord
    token: Optional[str] = None
    claims: Optional[TokenClaims] = None

    @classmethod
    def from_record(
        cls,
        record: CredentialRecord,
        *,
        token: Optional[str] = None,
        claims: Optional[TokenClaims] = None,
    ) -> "Principal":
        return cls(
            id=record.id,
            email=record.email,
            name=record.name,
            auth_provider=record.auth_provider,
            record=record,
            token=token,
            claims=claims,
        )


class TokenVerifier:
    """Turn a raw bearer token into a :class:`Principal`.

    Checks run in a fixed order and stop at the first failure: presence,
    structure/signature/type, expiry, revocation, then account state. A token
    that is both expired and revoked therefore reports expiry, and no
    registry lookup happens for it.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        registry: RevocationRegistry,
        store,
        lockout: LockoutPolicy,
        *,
        timeout_seconds: float,
    ) -> None:
        self.issuer = issuer
        self.registry = registry
        self.store = store
        self.lockout = lockout
        self.timeout_seconds = timeout_seconds

    async def verify(
        self, raw_token: Optional[str], *, expected_type: str = ACCESS
    ) -> Principal:
        if not raw_token:
            raise MissingTokenError()
        claims = self.issuer.decode(raw_token, expected_type=expected_type)
        if await self.registry.is_revoked(raw_token):
            raise TokenRevokedError()
        record = await call_store(self.timeout_seconds, self.store.get_user, claims.user_id)
        if record is None or not record.is_active:
            raise UserNotFoundError()
        if self.lockout.is_locked(record):
            raise AccountLockedError()
        return Principal.from_record(record, token=raw_token, claims=claims)
