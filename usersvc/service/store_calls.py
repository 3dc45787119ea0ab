from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

from usersvc.logging import get_logger
from usersvc.service.errors import StoreUnavailableError
from usersvc.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(
    timeout_seconds: float, func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a blocking store method off the event loop with a deadline.

    A timeout or a backend outage becomes :class:`StoreUnavailableError` (5xx)
    so callers can never mistake it for a credential or token rejection.
    Other storage exceptions, such as ``ConstraintViolation``, pass through.
    """
    operation = getattr(func, "__name__", "store_call")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(func, *args, **kwargs)),
            timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=operation, timeout=timeout_seconds)
        raise StoreUnavailableError(f"{operation} timed out") from exc
    except StoreUnavailable as exc:
        logger.error("store_call_failed", operation=operation, error=exc.message)
        raise StoreUnavailableError(f"{operation} failed") from exc
