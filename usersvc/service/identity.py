from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from usersvc.logging import get_logger
from usersvc.service.errors import ProviderUnavailableError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    """What an identity provider vouches for after checking its own token."""

    provider: str
    subject: str
    email: str
    name: str
    email_verified: bool = False
    picture: Optional[str] = None


class IdentityVerifier(Protocol):
    """Checks a provider-issued token and returns the identity behind it.

    Implementations raise ``InvalidProviderTokenError`` for tokens the
    provider rejects and ``ProviderUnavailableError`` when the provider
    cannot be reached.
    """

    provider: str

    async def verify(self, provider_token: str) -> ExternalIdentity: ...


class UnconfiguredIdentityVerifier:
    """Default verifier: provider sign-in is off until a real verifier is plugged in."""

    provider = "google"

    async def verify(self, provider_token: str) -> ExternalIdentity:
        logger.warning("oauth_provider_not_configured", provider=self.provider)
        raise ProviderUnavailableError(f"{self.provider} sign-in is not configured")
