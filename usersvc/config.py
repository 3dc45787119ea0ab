from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from usersvc.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_LANGUAGES = ("FR", "EN")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and passed to every component."""

    environment: str = env_field(
        "development",
        "ENVIRONMENT",
        description="production hides stack traces from 5xx responses",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/usersvc", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/usersvc", "SHARED_FS_ROOT")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("usersvc", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(24 * 3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS"
    )

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_duration_seconds: int = env_field(2 * 3600, "LOCKOUT_DURATION_SECONDS")

    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(3600, "REGISTER_RATE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(20, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(900, "LOGIN_RATE_WINDOW_SECONDS")
    reset_request_rate_limit: int = env_field(3, "RESET_REQUEST_RATE_LIMIT")
    reset_request_rate_window_seconds: int = env_field(
        3600, "RESET_REQUEST_RATE_WINDOW_SECONDS"
    )
    reset_submit_rate_limit: int = env_field(5, "RESET_SUBMIT_RATE_LIMIT")
    reset_submit_rate_window_seconds: int = env_field(
        900, "RESET_SUBMIT_RATE_WINDOW_SECONDS"
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client address",
    )

    default_language: str = env_field("FR", "DEFAULT_LANGUAGE")

    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    password_reset_ttl_seconds: int = env_field(600, "PASSWORD_RESET_TTL_SECONDS")
    revocation_purge_interval_seconds: int = env_field(
        3600, "REVOCATION_PURGE_INTERVAL_SECONDS"
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("default_language")
    @classmethod
    def _validate_language(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in SUPPORTED_LANGUAGES:
            raise ValueError(f"default_language must be one of {SUPPORTED_LANGUAGES}")
        return normalized

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "lockout_threshold",
        "lockout_duration_seconds",
        "register_rate_limit",
        "register_rate_window_seconds",
        "login_rate_limit",
        "login_rate_window_seconds",
        "reset_request_rate_limit",
        "reset_request_rate_window_seconds",
        "reset_submit_rate_limit",
        "reset_submit_rate_window_seconds",
        "password_reset_ttl_seconds",
        "revocation_purge_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        environment = str(info.data.get("environment", "development")).lower()
        if environment == "production":
            raise ValueError("JWT_SECRET must be set in production")
        # Persist a generated secret so tokens survive restarts in development
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/usersvc")
        secret_path = fs_root / ".jwt_secret"
        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= 32:
                    return persisted

        generated = secrets.token_urlsafe(64)
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(secret_path))
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise ValueError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated
