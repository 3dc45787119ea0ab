from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from usersvc.storage.models import CredentialRecord

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ0-9\s'.-]+$")

EMAIL_MAX_LENGTH = 255
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128


def _email_error() -> PydanticCustomError:
    return PydanticCustomError("email_invalid", "invalid email address")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise _email_error()
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) < 3 or len(normalized) > EMAIL_MAX_LENGTH:
        raise _email_error()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise _email_error()
    if not _EMAIL_LOCAL_PART.match(local):
        raise _email_error()
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise _email_error()
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise _email_error()
    return normalized


def _validate_name(value: str) -> str:
    normalized = value.strip() if isinstance(value, str) else ""
    if not 2 <= len(normalized) <= 100 or not _NAME_PATTERN.match(normalized):
        raise PydanticCustomError(
            "name_invalid", "name must be 2-100 letters, digits, spaces, ' . or -"
        )
    return normalized


def _validate_password_strength(value: str) -> str:
    """6-128 characters including a lowercase letter, an uppercase letter and a digit."""
    if (
        not PASSWORD_MIN_LENGTH <= len(value) <= PASSWORD_MAX_LENGTH
        or not re.search(r"[a-z]", value)
        or not re.search(r"[A-Z]", value)
        or not re.search(r"\d", value)
    ):
        raise PydanticCustomError("password_strength", "password is too weak")
    return value


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    refresh_token: Optional[str] = None


class OAuthLoginRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    google_token: Optional[str] = Field(default=None, max_length=8192)


class LogoutRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    refresh_token: Optional[str] = None


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_name(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_email(value)

    @model_validator(mode="after")
    def _require_one_field(self) -> "UpdateProfileRequest":
        if self.name is None and self.email is None:
            raise PydanticCustomError(
                "at_least_one_field", "at least one field must be provided"
            )
        return self


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class DeleteAccountRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX_LENGTH)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenPayload(_CamelModel):
    access_token: str
    refresh_token: str
    expires_in: str


class OAuthTokenPayload(TokenPayload):
    is_new: bool


class UserProfile(_CamelModel):
    id: str
    name: str
    email: str
    auth_provider: str
    profile_picture_url: Optional[str] = None
    is_active: bool
    created_at: datetime
    last_active_at: datetime
    can_change_password: bool

    @classmethod
    def from_record(cls, record: CredentialRecord) -> "UserProfile":
        return cls(
            id=record.id,
            name=record.name,
            email=record.email,
            auth_provider=record.auth_provider,
            profile_picture_url=record.profile_picture_url,
            is_active=record.is_active,
            created_at=record.created_at,
            last_active_at=record.last_active_at,
            can_change_password=record.can_change_password,
        )


class SuccessEnvelope(BaseModel):
    status: Literal["success"] = "success"
    data: Optional[Any] = None
    message: str


class FailureEnvelope(_CamelModel):
    status: Literal["failed"] = "failed"
    error_code: str
    error_name: str
    error_message: str
    details: Optional[list[dict[str, Any]]] = None
    retry_after: Optional[int] = None
    stack: Optional[str] = None


def dump(model: BaseModel) -> dict[str, Any]:
    """JSON-ready dict with camelCase keys for envelope payloads."""
    return model.model_dump(by_alias=True, mode="json")
