from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from usersvc.config import Settings
from usersvc.logging import get_logger
from usersvc.service.activity import ActivityRecorder
from usersvc.service.auth import AuthService
from usersvc.service.i18n import LanguageResolver
from usersvc.service.identity import IdentityVerifier, UnconfiguredIdentityVerifier
from usersvc.service.lockout import LockoutPolicy
from usersvc.service.notifications import LoggingResetNotifier, ResetNotifier
from usersvc.service.passwords import PasswordService
from usersvc.service.rate_limit import RateLimiter, RateLimitPolicy
from usersvc.service.revocation import RevocationRegistry
from usersvc.service.tokens import Clock, TokenIssuer
from usersvc.service.users import UserService
from usersvc.service.verifier import TokenVerifier
from usersvc.storage.memory import MemoryStore
from usersvc.storage.postgres import PostgresStore
from usersvc.storage.redis_cache import RedisCache

logger = get_logger(__name__)

REGISTER = "register"
LOGIN = "login"
RESET_REQUEST = "password_reset_request"
RESET_SUBMIT = "password_reset_submit"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def rate_limit_policies(settings: Settings) -> dict[str, RateLimitPolicy]:
    return {
        REGISTER: RateLimitPolicy(
            REGISTER, settings.register_rate_limit, settings.register_rate_window_seconds
        ),
        LOGIN: RateLimitPolicy(
            LOGIN, settings.login_rate_limit, settings.login_rate_window_seconds
        ),
        RESET_REQUEST: RateLimitPolicy(
            RESET_REQUEST,
            settings.reset_request_rate_limit,
            settings.reset_request_rate_window_seconds,
        ),
        RESET_SUBMIT: RateLimitPolicy(
            RESET_SUBMIT,
            settings.reset_submit_rate_limit,
            settings.reset_submit_rate_window_seconds,
        ),
    }


class Runtime:
    """Builds every component once from ``settings`` and wires them together."""

    def __init__(
        self,
        settings: Settings,
        *,
        store=None,
        cache: Optional[RedisCache] = None,
        notifier: Optional[ResetNotifier] = None,
        identity_verifier: Optional[IdentityVerifier] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            environment=settings.environment,
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        timeout = settings.store_timeout_seconds
        self.languages = LanguageResolver(settings.default_language)
        self.passwords = PasswordService(settings)
        self.issuer = TokenIssuer(settings, clock=clock)
        self.registry = RevocationRegistry(
            self.store,
            self.cache,
            max_token_lifetime=self.issuer.max_lifetime,
            timeout_seconds=timeout,
            clock=clock,
        )
        self.lockout = LockoutPolicy(
            self.store,
            threshold=settings.lockout_threshold,
            lock_duration=timedelta(seconds=settings.lockout_duration_seconds),
            timeout_seconds=timeout,
            clock=clock,
        )
        self.verifier = TokenVerifier(
            self.issuer, self.registry, self.store, self.lockout, timeout_seconds=timeout
        )
        self.auth = AuthService(
            self.store,
            settings,
            passwords=self.passwords,
            issuer=self.issuer,
            verifier=self.verifier,
            registry=self.registry,
            lockout=self.lockout,
            notifier=notifier or LoggingResetNotifier(),
            identity=identity_verifier or UnconfiguredIdentityVerifier(),
        )
        self.users = UserService(
            self.store, settings, passwords=self.passwords, registry=self.registry
        )
        self.activity = ActivityRecorder(self.store, timeout_seconds=timeout, clock=clock)
        self.rate_limiters = {
            name: RateLimiter(policy, self.cache, clock=clock)
            for name, policy in rate_limit_policies(settings).items()
        }
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
        )

    def _build_store(self):
        settings = self.settings
        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            if settings.use_memory_store:
                store = MemoryStore(fs_root=settings.shared_fs_root)
            else:
                store = PostgresStore(
                    settings.database_url, timeout_seconds=settings.store_timeout_seconds
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Optional[RedisCache]:
        settings = self.settings
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(
                    settings.redis_url, socket_timeout=settings.store_timeout_seconds
                )
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation and rate limits; start Redis or "
                "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revocations use the "
                "credential store and rate limits are per-process."
            ),
            mode=fallback_mode,
        )
        return None

    def limiter(self, name: str) -> RateLimiter:
        return self.rate_limiters[name]

    async def close(self) -> None:
        await self.activity.drain()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")
