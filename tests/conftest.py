import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults must be in place before usersvc modules are imported
_test_tmp_dir = tempfile.mkdtemp(prefix="usersvc_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from usersvc.app import create_app  # noqa: E402
from usersvc.config import Settings  # noqa: E402
from usersvc.service.runtime import Runtime  # noqa: E402
from usersvc.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
STRONG_PASSWORD = "Secret123"


class FakeClock:
    """Settable clock shared by every component of a runtime."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Captures reset tokens instead of mailing them."""

    def __init__(self):
        self.sent = []

    async def send_password_reset(self, record, token, expires_at):
        self.sent.append({"email": record.email, "token": token, "expires_at": expires_at})


def make_settings(tmp_path, **overrides):
    values = dict(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        jwt_secret=TEST_SECRET,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, notifier):
    return Runtime(settings, store=MemoryStore(), notifier=notifier)


@pytest.fixture
def client(runtime):
    """Test client over a fresh app; the lifespan runs for the client's lifetime."""
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def register(client, *, name="Alice", email="alice@test.com", password=STRONG_PASSWORD):
    return client.post(
        "/auth/register", json={"name": name, "email": email, "password": password}
    )


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
