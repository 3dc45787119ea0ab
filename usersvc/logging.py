from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "usersvc"

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "authorization", "email")
_TRUTHY = {"1", "true", "yes", "on"}

EventDict = Dict[str, Any]


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
    request_id = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(request_id)
    return request_id


def _stamp_request(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    request_id = get_correlation_id()
    if request_id:
        event_dict["correlation_id"] = request_id
    return event_dict


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    # fingerprints and digests are safe to log
    if lowered.endswith("_hash") or lowered.endswith("_prefix"):
        return False
    return any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS)


def _mask(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _scrub(data: EventDict) -> EventDict:
    for key, value in list(data.items()):
        if isinstance(value, dict):
            data[key] = _scrub(dict(value))
        elif _is_sensitive(key):
            data[key] = _mask(value)
    return data


def _redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask passwords, tokens and addresses that reach a log call, nested dicts included."""
    return _scrub(event_dict)


def _renderer(json_output: bool, development_mode: bool) -> list:
    if development_mode or not json_output:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline used by every module.

    Args:
        log_level: minimum level emitted (DEBUG, INFO, WARNING, ERROR)
        json_output: one JSON object per line when True
        development_mode: coloured console output, overrides ``json_output``
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _stamp_request,
            _redact_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer(json_output, development_mode),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
