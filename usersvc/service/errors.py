from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for every anticipated failure the API reports.

    Each subclass fixes an HTTP ``status_code``, the wire ``error_name`` and the
    catalog ``message_key`` the language resolver renders. Handlers at the HTTP
    boundary translate these without reinterpreting them.
    """

    status_code: int = 400
    error_name: str = "VALIDATION_ERROR"
    message_key: str = "validation.invalid"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        message_key: Optional[str] = None,
    ) -> None:
        if message_key is not None:
            self.message_key = message_key
        self.message = message or self.message_key
        super().__init__(self.message)
        self.detail = detail or {}


class MissingTokenError(ServiceError):
    status_code = 401
    error_name = "MISSING_TOKEN"
    message_key = "auth.missing_token"


class InvalidTokenError(ServiceError):
    """Bad structure, bad signature, or a token of the wrong type."""

    status_code = 401
    error_name = "INVALID_TOKEN"
    message_key = "auth.invalid_token"


class TokenExpiredError(ServiceError):
    status_code = 401
    error_name = "TOKEN_EXPIRED"
    message_key = "auth.token_expired"


class TokenRevokedError(ServiceError):
    status_code = 401
    error_name = "TOKEN_REVOKED"
    message_key = "auth.token_revoked"


class UserNotFoundError(ServiceError):
    """Token subject is gone or deactivated."""

    status_code = 401
    error_name = "USER_NOT_FOUND"
    message_key = "auth.user_not_found"


class AccountLockedError(ServiceError):
    status_code = 423
    error_name = "ACCOUNT_LOCKED"
    message_key = "auth.account_locked"


class InvalidCredentialsError(ServiceError):
    status_code = 401
    error_name = "INVALID_CREDENTIALS"
    message_key = "auth.invalid_credentials"


class ExternalAuthAccountError(ServiceError):
    """Password operation attempted on an account without a password."""

    status_code = 401
    error_name = "EXTERNAL_AUTH_ACCOUNT"
    message_key = "auth.external_auth"


class InvalidProviderTokenError(InvalidTokenError):
    """Identity provider rejected the token or vouched for an unverified email."""

    message_key = "auth.provider_token_invalid"


class ProviderUnavailableError(ServiceError):
    status_code = 503
    error_name = "SERVICE_UNAVAILABLE"
    message_key = "auth.provider_unavailable"


class ValidationError(ServiceError):
    status_code = 400
    error_name = "VALIDATION_ERROR"
    message_key = "validation.invalid"


class InvalidCurrentPasswordError(InvalidCredentialsError):
    """Re-authentication failed on a password change or account deletion."""

    message_key = "validation.current_password_invalid"


class InvalidResetTokenError(ServiceError):
    status_code = 400
    error_name = "INVALID_RESET_TOKEN"
    message_key = "validation.reset_token_invalid"


class NotFoundError(ServiceError):
    status_code = 404
    error_name = "NOT_FOUND"
    message_key = "http.not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_name = "CONFLICT"
    message_key = "user.exists"


class RateLimitedError(ServiceError):
    status_code = 429
    error_name = "RATE_LIMIT_EXCEEDED"
    message_key = "rate_limit.exceeded"

    def __init__(self, retry_after: int, *, limit: int = 0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.retry_after = max(1, int(retry_after))
        self.limit = limit


class StoreUnavailableError(ServiceError):
    """Persistence timed out or failed; never reported as an auth rejection."""

    status_code = 503
    error_name = "SERVICE_UNAVAILABLE"
    message_key = "system.unavailable"


class ServerError(ServiceError):
    status_code = 500
    error_name = "INTERNAL_ERROR"
    message_key = "system.internal_error"


__all__ = [
    "ServiceError",
    "MissingTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "UserNotFoundError",
    "AccountLockedError",
    "InvalidCredentialsError",
    "ExternalAuthAccountError",
    "InvalidProviderTokenError",
    "ProviderUnavailableError",
    "ValidationError",
    "InvalidCurrentPasswordError",
    "InvalidResetTokenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "StoreUnavailableError",
    "ServerError",
]
