from __future__ import annotations

import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from usersvc.api.schemas import FailureEnvelope
from usersvc.logging import get_logger
from usersvc.service.errors import RateLimitedError, ServiceError
from usersvc.service.i18n import LanguageResolver, translate
from usersvc.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_FALLBACK_RESOLVER = LanguageResolver()

_HTTP_ERROR_NAMES = {
    404: ("NOT_FOUND", "http.not_found"),
    405: ("METHOD_NOT_ALLOWED", "http.method_not_allowed"),
}

# pydantic error type -> catalog key
_VALIDATION_MESSAGE_KEYS = {
    "missing": "validation.required",
    "email_invalid": "validation.email",
    "name_invalid": "validation.name",
    "password_strength": "validation.password_strength",
    "at_least_one_field": "validation.at_least_one_field",
}


def request_language(request: Request) -> str:
    runtime = getattr(request.app.state, "runtime", None)
    resolver = runtime.languages if runtime is not None else _FALLBACK_RESOLVER
    return resolver.resolve_request(request)


def _expose_stack(request: Request) -> bool:
    runtime = getattr(request.app.state, "runtime", None)
    return runtime is not None and not runtime.settings.is_production


def _stack_for(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def error_response(
    status_code: int,
    error_name: str,
    message: str,
    *,
    details: Optional[list[dict[str, Any]]] = None,
    retry_after: Optional[int] = None,
    stack: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    envelope = FailureEnvelope(
        error_code=str(status_code),
        error_name=error_name,
        error_message=message,
        details=details,
        retry_after=retry_after,
        stack=stack,
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


def _validation_details(exc: RequestValidationError, language: str) -> list[dict[str, Any]]:
    details = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        key = _VALIDATION_MESSAGE_KEYS.get(error.get("type", ""), "validation.invalid")
        details.append(
            {
                "field": ".".join(loc) or None,
                "message": translate(key, language),
            }
        )
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure, anticipated or not, as the failure envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        language = request_language(request)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_name=exc.error_name,
            message=exc.message,
            cause=repr(exc.__cause__) if exc.__cause__ else None,
        )
        headers = None
        retry_after = None
        params: dict[str, Any] = {}
        if isinstance(exc, RateLimitedError):
            retry_after = exc.retry_after
            params["retry_after"] = retry_after
            headers = {
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(retry_after),
            }
        stack = (
            _stack_for(exc)
            if exc.status_code >= 500 and _expose_stack(request)
            else None
        )
        return error_response(
            exc.status_code,
            exc.error_name,
            translate(exc.message_key, language, **params),
            retry_after=retry_after,
            stack=stack,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        language = request_language(request)
        details = _validation_details(exc, language)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[detail["field"] for detail in details],
        )
        types = {error.get("type") for error in exc.errors()}
        headline = (
            "validation.at_least_one_field"
            if "at_least_one_field" in types
            else "validation.invalid"
        )
        return error_response(
            400,
            "VALIDATION_ERROR",
            translate(headline, language),
            details=details,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, "CONFLICT", translate("user.exists", request_language(request)))

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            operation=exc.operation,
            message=exc.message,
        )
        return error_response(
            503,
            "SERVICE_UNAVAILABLE",
            translate("system.unavailable", request_language(request)),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        error_name, key = _HTTP_ERROR_NAMES.get(exc.status_code, ("HTTP_ERROR", "http.error"))
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return error_response(
            exc.status_code,
            error_name,
            translate(key, request_language(request)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(
            500,
            "INTERNAL_ERROR",
            translate("system.internal_error", request_language(request)),
            stack=_stack_for(exc) if _expose_stack(request) else None,
        )
