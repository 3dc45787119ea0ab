from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from usersvc.logging import get_logger
from usersvc.storage.common import ensure_utc, normalize_email
from usersvc.storage.errors import ConstraintViolation, StoreUnavailable
from usersvc.storage.models import CredentialRecord, RevocationEntry, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS user_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        password_hash TEXT,
        auth_provider TEXT NOT NULL DEFAULT 'email',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_login TIMESTAMPTZ,
        account_locked_until TIMESTAMPTZ,
        profile_picture_url TEXT,
        password_reset_hash TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_active_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT user_account_provider_hash CHECK (
            (auth_provider = 'email') = (password_hash IS NOT NULL)
        )
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS user_account_reset_hash_idx
        ON user_account (password_reset_hash)
        WHERE password_reset_hash IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        fingerprint TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        reason TEXT NOT NULL,
        revoked_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS revoked_token_revoked_at_idx
        ON revoked_token (revoked_at)
    """,
)

# Postgres evaluates every SET expression against the pre-update row, so the
# restart-after-expiry, increment and threshold check happen in one statement.
_RECORD_FAILED_LOGIN_SQL = """
UPDATE user_account SET
    failed_login_attempts = CASE
        WHEN account_locked_until IS NOT NULL AND account_locked_until <= %(now)s THEN 1
        ELSE failed_login_attempts + 1
    END,
    account_locked_until = CASE
        WHEN account_locked_until IS NOT NULL AND account_locked_until > %(now)s
            THEN account_locked_until
        WHEN (CASE
                WHEN account_locked_until IS NOT NULL AND account_locked_until <= %(now)s THEN 1
                ELSE failed_login_attempts + 1
              END) >= %(threshold)s
            THEN %(lock_until)s
        ELSE NULL
    END,
    last_failed_login = %(now)s,
    updated_at = %(now)s
WHERE id = %(id)s
RETURNING *
"""


class PostgresStore:
    """Credential store backed by Postgres through a psycopg connection pool."""

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("credential store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Optional[dict[str, Any]]) -> Optional[CredentialRecord]:
        if not row:
            return None
        return CredentialRecord(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            password_hash=row.get("password_hash"),
            auth_provider=row.get("auth_provider") or "email",
            is_active=bool(row.get("is_active", True)),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            last_failed_login=ensure_utc(row.get("last_failed_login")),
            account_locked_until=ensure_utc(row.get("account_locked_until")),
            profile_picture_url=row.get("profile_picture_url"),
            password_reset_hash=row.get("password_reset_hash"),
            password_reset_expires_at=ensure_utc(row.get("password_reset_expires_at")),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
            last_active_at=ensure_utc(row["last_active_at"]),
        )

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: Optional[str],
        *,
        auth_provider: str = "email",
        profile_picture_url: Optional[str] = None,
    ) -> CredentialRecord:
        record = CredentialRecord.new(
            email=normalize_email(email),
            name=name,
            password_hash=password_hash,
            auth_provider=auth_provider,
            profile_picture_url=profile_picture_url,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_account (
                        id, email, name, password_hash, auth_provider, profile_picture_url,
                        created_at, updated_at, last_active_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.email,
                        record.name,
                        record.password_hash,
                        record.auth_provider,
                        record.profile_picture_url,
                        record.created_at,
                        record.updated_at,
                        record.last_active_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return record

    def get_user(self, user_id: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row)

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[CredentialRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE user_account
                    SET name = COALESCE(%s, name),
                        email = COALESCE(%s, email),
                        updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        name,
                        normalize_email(email) if email is not None else None,
                        utcnow(),
                        user_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def save_password(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_account
                SET password_hash = %s,
                    failed_login_attempts = 0,
                    account_locked_until = NULL,
                    updated_at = %s
                WHERE id = %s AND auth_provider = 'email'
                RETURNING id
                """,
                (password_hash, utcnow(), user_id),
            ).fetchone()
        return row is not None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM user_account WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
        return row is not None

    # -- lockout ---------------------------------------------------------

    def record_failed_login(
        self,
        user_id: str,
        now: datetime,
        *,
        threshold: int,
        lock_duration: timedelta,
    ) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                _RECORD_FAILED_LOGIN_SQL,
                {
                    "id": user_id,
                    "now": now,
                    "threshold": threshold,
                    "lock_until": now + lock_duration,
                },
            ).fetchone()
        return self._row_to_user(row)

    def reset_login_attempts(self, user_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_account
                SET failed_login_attempts = 0,
                    account_locked_until = NULL,
                    last_active_at = %s
                WHERE id = %s
                """,
                (now, user_id),
            )

    def touch_last_active(self, user_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_account SET last_active_at = %s WHERE id = %s",
                (now, user_id),
            )

    # -- password reset tickets -------------------------------------------

    def set_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_account
                SET password_reset_hash = %s, password_reset_expires_at = %s
                WHERE id = %s
                """,
                (token_hash, expires_at, user_id),
            )

    def consume_password_reset(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH ticket AS (
                    SELECT id, password_reset_expires_at
                    FROM user_account
                    WHERE password_reset_hash = %s
                    FOR UPDATE
                )
                UPDATE user_account AS u
                SET password_reset_hash = NULL, password_reset_expires_at = NULL
                FROM ticket
                WHERE u.id = ticket.id
                RETURNING u.id AS id, ticket.password_reset_expires_at AS expires_at
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        expires_at = ensure_utc(row.get("expires_at"))
        if expires_at is None or expires_at <= now:
            return None
        return row["id"]

    # -- revocations -----------------------------------------------------

    def add_revocation(self, entry: RevocationEntry) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO revoked_token (fingerprint, user_id, reason, revoked_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (fingerprint) DO NOTHING
                RETURNING fingerprint
                """,
                (
                    entry.fingerprint,
                    entry.user_id,
                    entry.reason,
                    entry.revoked_at,
                    entry.expires_at,
                ),
            ).fetchone()
        return row is not None

    def get_revocation(self, fingerprint: str) -> Optional[RevocationEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM revoked_token WHERE fingerprint = %s", (fingerprint,)
            ).fetchone()
        if not row:
            return None
        return RevocationEntry(
            fingerprint=row["fingerprint"],
            user_id=row["user_id"],
            reason=row["reason"],
            revoked_at=ensure_utc(row["revoked_at"]),
            expires_at=ensure_utc(row["expires_at"]),
        )

    def purge_revocations(self, revoked_before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM revoked_token WHERE revoked_at < %s", (revoked_before,)
            )
            return cur.rowcount or 0
