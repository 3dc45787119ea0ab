"""Tests for the in-process credential store and its JSON persistence."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from usersvc.storage.errors import ConstraintViolation
from usersvc.storage.memory import MemoryStore
from usersvc.storage.models import CredentialRecord, RevocationEntry

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return MemoryStore()


class TestUsers:
    def test_email_is_normalized_and_unique(self, store):
        store.create_user("Alice", "  Alice@Test.COM ", "hash")
        assert store.get_user_by_email("alice@test.com").name == "Alice"
        with pytest.raises(ConstraintViolation):
            store.create_user("Other", "ALICE@test.com", "hash")

    def test_records_are_copies(self, store):
        record = store.create_user("Alice", "alice@test.com", "hash")
        record.name = "Mallory"
        assert store.get_user(record.id).name == "Alice"

    def test_update_profile_conflict(self, store):
        store.create_user("Alice", "alice@test.com", "hash")
        bob = store.create_user("Bob", "bob@test.com", "hash")
        with pytest.raises(ConstraintViolation):
            store.update_profile(bob.id, email="alice@test.com")
        assert store.update_profile(bob.id, name="Robert").name == "Robert"
        assert store.update_profile("missing", name="X") is None

    def test_save_password_clears_lock(self, store):
        record = store.create_user("Alice", "alice@test.com", "hash")
        store.users[record.id].failed_login_attempts = 5
        store.users[record.id].account_locked_until = NOW
        assert store.save_password(record.id, "new-hash")
        updated = store.get_user(record.id)
        assert updated.password_hash == "new-hash"
        assert updated.failed_login_attempts == 0
        assert updated.account_locked_until is None

    def test_delete(self, store):
        record = store.create_user("Alice", "alice@test.com", "hash")
        assert store.delete_user(record.id)
        assert not store.delete_user(record.id)
        assert store.get_user(record.id) is None


class TestRecordInvariants:
    def test_email_account_needs_hash(self):
        with pytest.raises(ValueError):
            CredentialRecord.new(email="a@b.co", name="Al")

    def test_external_account_has_no_hash(self, store):
        record = store.create_user("Gina", "gina@test.com", None, auth_provider="google")
        assert not record.can_change_password
        with pytest.raises(ValueError):
            CredentialRecord.new(email="a@b.co", name="Al", password_hash="h", auth_provider="google")


class TestResetTickets:
    def test_ticket_is_single_use(self, store):
        record = store.create_user("Alice", "alice@test.com", "hash")
        store.set_password_reset(record.id, "digest", NOW + timedelta(minutes=10))
        assert store.consume_password_reset("digest", NOW) == record.id
        assert store.consume_password_reset("digest", NOW) is None

    def test_expired_ticket_is_cleared(self, store):
        record = store.create_user("Alice", "alice@test.com", "hash")
        store.set_password_reset(record.id, "digest", NOW - timedelta(seconds=1))
        assert store.consume_password_reset("digest", NOW) is None
        assert store.get_user(record.id).password_reset_hash is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        record = first.create_user("Alice", "alice@test.com", "hash")
        first.add_revocation(
            RevocationEntry("fp", record.id, "logout", NOW, NOW + timedelta(days=1))
        )

        second = MemoryStore(fs_root=str(tmp_path))
        assert second.get_user_by_email("alice@test.com").id == record.id
        assert second.get_revocation("fp").revoked_at == NOW
        assert (tmp_path / "state" / "memory_store.json").exists()


class TestConcurrentFailedLogins:
    """Failed-login counting must not lose updates under concurrent requests."""

    def test_parallel_failures_are_all_counted(self, store):
        record = store.create_user("Alice", "alice@test.com", "hash")
        thread_count = 20
        threshold = 5
        barrier = threading.Barrier(thread_count)
        results = []
        errors = []

        def fail_once(offset):
            try:
                barrier.wait()
                updated = store.record_failed_login(
                    record.id,
                    NOW + timedelta(milliseconds=offset),
                    threshold=threshold,
                    lock_duration=timedelta(hours=2),
                )
                results.append(updated)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=fail_once, args=(i,)) for i in range(thread_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert not errors
        final = store.get_user(record.id)
        assert final.failed_login_attempts == thread_count
        # every caller saw a distinct count, so no increment was lost
        assert sorted(r.failed_login_attempts for r in results) == list(range(1, thread_count + 1))
        engaged = [r for r in results if r.failed_login_attempts == threshold]
        assert len(engaged) == 1
        lock_values = {r.account_locked_until for r in results if r.account_locked_until}
        assert lock_values == {engaged[0].account_locked_until}
        assert final.account_locked_until == engaged[0].account_locked_until
