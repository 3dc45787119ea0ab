from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

from usersvc.logging import get_logger
from usersvc.storage.common import (
    failed_login_transition,
    format_datetime,
    normalize_email,
    parse_datetime,
)
from usersvc.storage.errors import ConstraintViolation
from usersvc.storage.models import CredentialRecord, RevocationEntry, utcnow


class MemoryStore:
    """In-process credential store for tests and local development.

    Every method takes ``_data_lock`` so read-modify-write sequences (the
    failed-login counter, reset-ticket consumption) are atomic with respect to
    concurrent requests. Records are handed out as copies. When ``fs_root`` is
    given, state is mirrored to ``fs_root/state/memory_store.json``.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, CredentialRecord] = {}
        self.revocations: Dict[str, RevocationEntry] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    def verify_connection(self) -> None:
        if self.fs_root is not None:
            self._state_path()

    # -- users -----------------------------------------------------------

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            existing.email == email and existing.id != exclude_id
            for existing in self.users.values()
        )

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: Optional[str],
        *,
        auth_provider: str = "email",
        profile_picture_url: Optional[str] = None,
    ) -> CredentialRecord:
        email = normalize_email(email)
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            record = CredentialRecord.new(
                email=email,
                name=name,
                password_hash=password_hash,
                auth_provider=auth_provider,
                profile_picture_url=profile_picture_url,
            )
            self.users[record.id] = record
            self._persist_state()
            return replace(record)

    def get_user(self, user_id: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            record = self.users.get(user_id)
            return replace(record) if record else None

    def get_user_by_email(self, email: str) -> Optional[CredentialRecord]:
        email = normalize_email(email)
        with self._data_lock:
            for record in self.users.values():
                if record.email == email:
                    return replace(record)
            return None

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[CredentialRecord]:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return None
            if email is not None:
                email = normalize_email(email)
                if self._email_taken(email, exclude_id=user_id):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                record.email = email
            if name is not None:
                record.name = name
            record.updated_at = utcnow()
            self._persist_state()
            return replace(record)

    def save_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return False
            record.password_hash = password_hash
            record.failed_login_attempts = 0
            record.account_locked_until = None
            record.updated_at = utcnow()
            self._persist_state()
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- lockout ---------------------------------------------------------

    def record_failed_login(
        self,
        user_id: str,
        now: datetime,
        *,
        threshold: int,
        lock_duration: timedelta,
    ) -> Optional[CredentialRecord]:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return None
            attempts, locked_until = failed_login_transition(
                record.failed_login_attempts,
                record.account_locked_until,
                now,
                threshold,
                lock_duration,
            )
            record.failed_login_attempts = attempts
            record.account_locked_until = locked_until
            record.last_failed_login = now
            record.updated_at = now
            self._persist_state()
            return replace(record)

    def reset_login_attempts(self, user_id: str, now: datetime) -> None:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return
            record.failed_login_attempts = 0
            record.account_locked_until = None
            record.last_active_at = now
            self._persist_state()

    def touch_last_active(self, user_id: str, now: datetime) -> None:
        with self._data_lock:
            record = self.users.get(user_id)
            if record:
                record.last_active_at = now
                self._persist_state()

    # -- password reset tickets -------------------------------------------

    def set_password_reset(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            record = self.users.get(user_id)
            if record:
                record.password_reset_hash = token_hash
                record.password_reset_expires_at = expires_at
                self._persist_state()

    def consume_password_reset(self, token_hash: str, now: datetime) -> Optional[str]:
        """Clear the matching reset ticket and return its owner, if still valid."""
        with self._data_lock:
            for record in self.users.values():
                if record.password_reset_hash != token_hash:
                    continue
                expires_at = record.password_reset_expires_at
                record.password_reset_hash = None
                record.password_reset_expires_at = None
                self._persist_state()
                if expires_at is None or expires_at <= now:
                    return None
                return record.id
            return None

    # -- revocations -----------------------------------------------------

    def add_revocation(self, entry: RevocationEntry) -> bool:
        with self._data_lock:
            if entry.fingerprint in self.revocations:
                return False
            self.revocations[entry.fingerprint] = replace(entry)
            self._persist_state()
            return True

    def get_revocation(self, fingerprint: str) -> Optional[RevocationEntry]:
        with self._data_lock:
            entry = self.revocations.get(fingerprint)
            return replace(entry) if entry else None

    def purge_revocations(self, revoked_before: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, entry in self.revocations.items()
                if entry.revoked_at < revoked_before
            ]
            for key in stale:
                self.revocations.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence -----------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "revocations": [
                self._serialize_revocation(e) for e in self.revocations.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize_user(u) for u in data.get("users", [])
        }
        self.revocations = {
            e["fingerprint"]: self._deserialize_revocation(e)
            for e in data.get("revocations", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            revocations=len(self.revocations),
        )
        return True

    @staticmethod
    def _serialize_user(user: CredentialRecord) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "auth_provider": user.auth_provider,
            "is_active": user.is_active,
            "failed_login_attempts": user.failed_login_attempts,
            "last_failed_login": format_datetime(user.last_failed_login),
            "account_locked_until": format_datetime(user.account_locked_until),
            "profile_picture_url": user.profile_picture_url,
            "password_reset_hash": user.password_reset_hash,
            "password_reset_expires_at": format_datetime(user.password_reset_expires_at),
            "created_at": format_datetime(user.created_at),
            "updated_at": format_datetime(user.updated_at),
            "last_active_at": format_datetime(user.last_active_at),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> CredentialRecord:
        return CredentialRecord(
            id=data["id"],
            email=data["email"],
            name=data.get("name") or "",
            password_hash=data.get("password_hash"),
            auth_provider=data.get("auth_provider", "email"),
            is_active=data.get("is_active", True),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            last_failed_login=parse_datetime(data.get("last_failed_login")),
            account_locked_until=parse_datetime(data.get("account_locked_until")),
            profile_picture_url=data.get("profile_picture_url"),
            password_reset_hash=data.get("password_reset_hash"),
            password_reset_expires_at=parse_datetime(data.get("password_reset_expires_at")),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
            last_active_at=parse_datetime(data.get("last_active_at")) or utcnow(),
        )

    @staticmethod
    def _serialize_revocation(entry: RevocationEntry) -> dict:
        return {
            "fingerprint": entry.fingerprint,
            "user_id": entry.user_id,
            "reason": entry.reason,
            "revoked_at": format_datetime(entry.revoked_at),
            "expires_at": format_datetime(entry.expires_at),
        }

    @staticmethod
    def _deserialize_revocation(data: dict) -> RevocationEntry:
        return RevocationEntry(
            fingerprint=data["fingerprint"],
            user_id=data["user_id"],
            reason=data.get("reason", "logout"),
            revoked_at=parse_datetime(data["revoked_at"]),
            expires_at=parse_datetime(data["expires_at"]),
        )
