from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from usersvc.config import Settings
from usersvc.logging import get_logger
from usersvc.service.errors import InvalidTokenError, TokenExpiredError
from usersvc.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = (ACCESS, REFRESH)

Clock = Callable[[], datetime]


def token_fingerprint(raw_token: str) -> str:
    """Stable identity for a raw token; revocation entries are keyed by it."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def format_lifetime(seconds: int) -> str:
    """Render a lifetime the way clients expect it (``24h``, ``7d``, ``15m``)."""
    # One day reads better as 24h
    if seconds % 86400 == 0 and seconds >= 2 * 86400:
        return f"{seconds // 86400}d"
    for unit, size in (("h", 3600), ("m", 60)):
        if seconds >= size and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_ttl_seconds: int

    @property
    def expires_in(self) -> str:
        return format_lifetime(self.access_ttl_seconds)


class TokenIssuer:
    """Sign and decode HS256 access/refresh tokens.

    Tokens carry ``userId``, ``type``, ``jti``, ``iat``, ``exp`` and ``iss``.
    The signing secret is read once from settings and never changes.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self._secret = settings.jwt_secret.encode("utf-8")
        self.issuer = settings.jwt_issuer
        self.access_ttl = timedelta(seconds=settings.access_token_ttl_seconds)
        self.refresh_ttl = timedelta(seconds=settings.refresh_token_ttl_seconds)
        self.clock: Clock = clock or utcnow

    @property
    def max_lifetime(self) -> timedelta:
        return max(self.access_ttl, self.refresh_ttl)

    def issue_tokens(self, user_id: str) -> IssuedTokens:
        return self.issue_with_lifetimes(
            user_id, access_ttl=self.access_ttl, refresh_ttl=self.refresh_ttl
        )

    def issue_with_lifetimes(
        self,
        user_id: str,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ) -> IssuedTokens:
        """Issue a pair with explicit lifetimes.

        Library-level only: used by tests to mint short-lived or already
        expired tokens. No HTTP route reaches this with caller-chosen values.
        """
        now = self.clock()
        access_exp = now + access_ttl
        refresh_exp = now + refresh_ttl
        return IssuedTokens(
            access_token=self._encode(self._claims(user_id, ACCESS, now, access_exp)),
            refresh_token=self._encode(self._claims(user_id, REFRESH, now, refresh_exp)),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            access_ttl_seconds=int(access_ttl.total_seconds()),
        )

    def _claims(
        self, user_id: str, token_type: str, now: datetime, expires_at: datetime
    ) -> dict[str, Any]:
        return {
            "userId": user_id,
            "type": token_type,
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

    # -- codec -----------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, raw_token: str, *, expected_type: str = ACCESS) -> TokenClaims:
        """Validate structure, signature, type and expiry, in that order.

        Raises:
            InvalidTokenError: malformed, badly signed, foreign issuer, or
                a token of another type
            TokenExpiredError: well-formed but past its ``exp``
        """
        if not raw_token.isascii():
            raise InvalidTokenError("token contains non-ASCII characters")
        try:
            header_b64, payload_b64, sig_b64 = raw_token.split(".")
        except ValueError:
            raise InvalidTokenError("token is not a three-part JWT")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise InvalidTokenError("token header is not decodable")
        # Only HS256 is accepted, closing off algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode("ascii"), sig_b64.encode("ascii")):
            raise InvalidTokenError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise InvalidTokenError("token payload is not decodable")
        if not isinstance(payload, dict):
            raise InvalidTokenError("token payload is not an object")

        user_id = payload.get("userId")
        token_type = payload.get("type")
        exp = payload.get("exp")
        iat = payload.get("iat", exp)
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTokenError("token has no subject")
        if token_type not in TOKEN_TYPES:
            raise InvalidTokenError("token has no valid type")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("token issuer mismatch")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidTokenError("token has no expiry")
        if isinstance(iat, bool) or not isinstance(iat, (int, float)):
            raise InvalidTokenError("token has a malformed issue time")
        if token_type != expected_type:
            raise InvalidTokenError(f"expected {expected_type} token, got {token_type}")

        try:
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
            issued_at = datetime.fromtimestamp(iat, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise InvalidTokenError("token timestamps out of range")
        if expires_at <= self.clock():
            raise TokenExpiredError("token expired")
        return TokenClaims(
            user_id=user_id,
            token_type=token_type,
            jti=str(payload.get("jti") or ""),
            issued_at=issued_at,
            expires_at=expires_at,
        )
