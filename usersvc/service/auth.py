from __future__ import annotations

from datetime import timedelta
from typing import Optional

from usersvc.config import Settings
from usersvc.logging import get_logger
from usersvc.service.errors import (
    AccountLockedError,
    ConflictError,
    ExternalAuthAccountError,
    InvalidCredentialsError,
    InvalidProviderTokenError,
    InvalidResetTokenError,
    InvalidTokenError,
    MissingTokenError,
    TokenExpiredError,
    TokenRevokedError,
)
from usersvc.service.identity import ExternalIdentity, IdentityVerifier
from usersvc.service.lockout import LockoutPolicy
from usersvc.service.notifications import ResetNotifier
from usersvc.service.passwords import PasswordService, hash_reset_token, new_reset_token
from usersvc.service.revocation import RevocationRegistry
from usersvc.service.store_calls import call_store
from usersvc.service.tokens import REFRESH, IssuedTokens, TokenIssuer
from usersvc.service.verifier import Principal, TokenVerifier
from usersvc.storage.common import normalize_email
from usersvc.storage.errors import ConstraintViolation
from usersvc.storage.models import CredentialRecord

logger = get_logger(__name__)

NAME_MAX_LENGTH = 100


def _display_name(identity: ExternalIdentity, email: str) -> str:
    name = " ".join(identity.name.split())[:NAME_MAX_LENGTH]
    if len(name) < 2:
        name = email.split("@")[0][:NAME_MAX_LENGTH]
    return name


class AuthService:
    """Registration, credential login, token refresh/logout and password reset."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        passwords: PasswordService,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        registry: RevocationRegistry,
        lockout: LockoutPolicy,
        notifier: ResetNotifier,
        identity: IdentityVerifier,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.issuer = issuer
        self.verifier = verifier
        self.registry = registry
        self.lockout = lockout
        self.notifier = notifier
        self.identity = identity
        self.timeout = settings.store_timeout_seconds
        self.logger = logger

    async def _store(self, func, *args, **kwargs):
        return await call_store(self.timeout, func, *args, **kwargs)

    async def register(
        self, name: str, email: str, password: str
    ) -> tuple[CredentialRecord, IssuedTokens]:
        email = normalize_email(email)
        password_hash = await self.passwords.hash(password)
        try:
            record = await self._store(self.store.create_user, name, email, password_hash)
        except ConstraintViolation as exc:
            self.logger.info("registration_conflict", detail=exc.detail)
            raise ConflictError("email already registered", detail=exc.detail)
        self.logger.info("user_registered", user_id=record.id)
        return record, self.issuer.issue_tokens(record.id)

    async def authenticate(self, email: str, password: str) -> Principal:
        """Check an email/password pair.

        Unknown and inactive accounts fail exactly like a wrong password. A
        locked account is reported before the password is looked at, so the
        correct password does not open it early.
        """
        record = await self._store(self.store.get_user_by_email, normalize_email(email))
        if record is None or not record.is_active:
            self.logger.info("login_unknown_account")
            raise InvalidCredentialsError()
        if self.lockout.is_locked(record):
            self.logger.warning("login_rejected_locked", user_id=record.id)
            raise AccountLockedError()
        if not record.password_hash:
            raise ExternalAuthAccountError()
        if not await self.passwords.verify(record.password_hash, password):
            await self.lockout.record_failed_attempt(record.id)
            raise InvalidCredentialsError()
        await self.lockout.record_success(record.id)
        return Principal.from_record(record)

    async def login(self, email: str, password: str) -> tuple[Principal, IssuedTokens]:
        principal = await self.authenticate(email, password)
        self.logger.info("login_succeeded", user_id=principal.id)
        return principal, self.issuer.issue_tokens(principal.id)

    async def oauth_login(
        self, provider_token: Optional[str]
    ) -> tuple[Principal, IssuedTokens, bool]:
        """Sign in with a provider token, creating a passwordless account on first use.

        An existing email/password account with the same address signs in as
        is and keeps its provider and password. Returns the principal, a
        normal token pair and whether the account was just created.
        """
        if not provider_token:
            raise MissingTokenError()
        identity = await self.identity.verify(provider_token)
        if not identity.email_verified:
            self.logger.warning("oauth_email_unverified", provider=identity.provider)
            raise InvalidProviderTokenError("provider email not verified")

        email = normalize_email(identity.email)
        record = await self._store(self.store.get_user_by_email, email)
        created = False
        if record is None:
            try:
                record = await self._store(
                    self.store.create_user,
                    _display_name(identity, email),
                    email,
                    None,
                    auth_provider=identity.provider,
                    profile_picture_url=identity.picture,
                )
                created = True
            except ConstraintViolation as exc:
                # lost a race with a concurrent first sign-in
                record = await self._store(self.store.get_user_by_email, email)
                if record is None:
                    raise ConflictError("email already registered", detail=exc.detail)

        if not record.is_active:
            raise InvalidCredentialsError()
        if self.lockout.is_locked(record):
            self.logger.warning("oauth_login_rejected_locked", user_id=record.id)
            raise AccountLockedError()
        self.logger.info(
            "oauth_login_succeeded",
            user_id=record.id,
            provider=identity.provider,
            created=created,
        )
        return Principal.from_record(record), self.issuer.issue_tokens(record.id), created

    async def refresh(self, refresh_token: Optional[str]) -> IssuedTokens:
        """Exchange a refresh token for a new pair; the old one is revoked.

        Revocation is the commit point: if a concurrent request already
        rotated the same token, this one loses and sees TOKEN_REVOKED.
        """
        principal = await self.verifier.verify(refresh_token, expected_type=REFRESH)
        rotated = await self.registry.revoke(
            refresh_token,
            principal.id,
            "rotated",
            expires_at=principal.claims.expires_at,
        )
        if not rotated:
            raise TokenRevokedError()
        self.logger.info("token_refreshed", user_id=principal.id)
        return self.issuer.issue_tokens(principal.id)

    async def logout(self, principal: Principal, refresh_token: Optional[str] = None) -> None:
        await self.registry.revoke(
            principal.token,
            principal.id,
            "logout",
            expires_at=principal.claims.expires_at if principal.claims else None,
        )
        if refresh_token:
            await self._revoke_refresh_on_logout(principal, refresh_token)
        self.logger.info("logout_completed", user_id=principal.id)

    async def _revoke_refresh_on_logout(self, principal: Principal, refresh_token: str) -> None:
        try:
            claims = self.issuer.decode(refresh_token, expected_type=REFRESH)
        except (InvalidTokenError, TokenExpiredError) as exc:
            # Logging out must succeed even when the companion token is unusable
            self.logger.info("logout_refresh_token_ignored", reason=exc.error_name)
            return
        if claims.user_id != principal.id:
            self.logger.warning("logout_refresh_token_foreign", user_id=principal.id)
            return
        await self.registry.revoke(
            refresh_token, principal.id, "logout", expires_at=claims.expires_at
        )

    async def request_password_reset(self, email: str) -> None:
        """Issue a reset ticket when an email account exists; silent otherwise."""
        record = await self._store(self.store.get_user_by_email, normalize_email(email))
        if record is None or not record.is_active or not record.password_hash:
            self.logger.info("password_reset_requested_no_account")
            return
        raw, digest = new_reset_token()
        expires_at = self.issuer.clock() + timedelta(
            seconds=self.settings.password_reset_ttl_seconds
        )
        await self._store(self.store.set_password_reset, record.id, digest, expires_at)
        await self.notifier.send_password_reset(record, raw, expires_at)
        self.logger.info("password_reset_requested", user_id=record.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        user_id = await self._store(
            self.store.consume_password_reset, hash_reset_token(token), self.issuer.clock()
        )
        if user_id is None:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidResetTokenError()
        password_hash = await self.passwords.hash(new_password)
        if not await self._store(self.store.save_password, user_id, password_hash):
            raise InvalidResetTokenError()
        self.logger.info("password_reset_completed", user_id=user_id)
