from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from usersvc.api.error_handling import register_exception_handlers
from usersvc.api.routes import router
from usersvc.config import Settings
from usersvc.logging import get_logger, set_correlation_id
from usersvc.service.i18n import translate
from usersvc.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_revocation_purge(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop dropping revocation entries older than any token."""

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await runtime.registry.purge_expired()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("revocation_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("revocation_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime
    purge_task = asyncio.create_task(
        _run_revocation_purge(runtime, runtime.settings.revocation_purge_interval_seconds)
    )
    logger.info("app_started", version=__version__, environment=runtime.settings.environment)

    yield

    purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await purge_task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def create_app(
    settings: Optional[Settings] = None,
    *,
    runtime: Optional[Runtime] = None,
) -> FastAPI:
    """Build the application around one :class:`Runtime`.

    Served with ``uvicorn usersvc.app:create_app --factory``; tests pass their
    own settings or a prepared runtime.
    """
    if runtime is None:
        runtime = Runtime(settings or Settings.from_env())

    app = FastAPI(title="User Accounts Service", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(runtime.settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "Accept-Language",
            "X-Language",
            "X-Request-ID",
        ],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Reuse the caller's X-Request-ID or mint one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        # Responses carry tokens and personal data
        response.headers.setdefault("Cache-Control", "no-store")
        if request.url.scheme == "https" and runtime.settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> JSONResponse:
        """Probe the credential store and, when configured, Redis."""
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        }
        healthy = db_ok

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        language = runtime.languages.resolve_request(request)
        body = {
            "status": "success" if healthy else "failed",
            "data": {
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "message": translate(
                "system.healthy" if healthy else "system.unavailable", language
            ),
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app
