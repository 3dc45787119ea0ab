"""Helpers shared between the memory and postgres credential stores."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so comparisons never mix kinds."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    return ensure_utc(datetime.fromisoformat(str(raw)))


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def failed_login_transition(
    attempts: int,
    locked_until: Optional[datetime],
    now: datetime,
    threshold: int,
    lock_duration: timedelta,
) -> Tuple[int, Optional[datetime]]:
    """Compute ``(failed_login_attempts, account_locked_until)`` after one failure.

    An elapsed lock restarts the count at 1. A still-active lock keeps its
    expiry. Reaching ``threshold`` engages a new lock of ``lock_duration``.
    The postgres store expresses the same rule as a single UPDATE.
    """
    locked_until = ensure_utc(locked_until)
    if locked_until is not None and locked_until <= now:
        attempts, locked_until = 0, None
    attempts += 1
    if locked_until is not None:
        return attempts, locked_until
    if attempts >= threshold:
        return attempts, now + lock_duration
    return attempts, None
