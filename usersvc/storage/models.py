from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

AUTH_PROVIDERS = ("email", "google")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CredentialRecord:
    """One account: identity, password hash, provider tag and lockout counters.

    ``password_hash`` is present exactly when ``auth_provider == "email"``.
    An ``account_locked_until`` in the past means "not locked"; it is cleared
    lazily on the next failed or successful login, never by a sweep.
    """

    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    auth_provider: str = "email"
    is_active: bool = True
    failed_login_attempts: int = 0
    last_failed_login: Optional[datetime] = None
    account_locked_until: Optional[datetime] = None
    profile_picture_url: Optional[str] = None
    password_reset_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.auth_provider not in AUTH_PROVIDERS:
            raise ValueError(f"unknown auth provider: {self.auth_provider}")
        if self.auth_provider == "email" and not self.password_hash:
            raise ValueError("email accounts require a password hash")
        if self.auth_provider != "email" and self.password_hash:
            raise ValueError("external accounts must not carry a password hash")
        if self.failed_login_attempts < 0:
            raise ValueError("failed_login_attempts must be >= 0")

    @classmethod
    def new(
        cls,
        *,
        email: str,
        name: str,
        password_hash: Optional[str] = None,
        auth_provider: str = "email",
        profile_picture_url: Optional[str] = None,
    ) -> "CredentialRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=password_hash,
            auth_provider=auth_provider,
            profile_picture_url=profile_picture_url,
            created_at=now,
            updated_at=now,
            last_active_at=now,
        )

    @property
    def can_change_password(self) -> bool:
        return self.auth_provider == "email" and bool(self.password_hash)


@dataclass
class RevocationEntry:
    fingerprint: str
    user_id: str
    reason: str
    revoked_at: datetime
    expires_at: datetime
