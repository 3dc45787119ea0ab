"""Unit tests for RedisCache and the registry's Redis path, with the client stubbed."""

import json
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FakeClock
from usersvc.service.errors import StoreUnavailableError
from usersvc.service.revocation import RevocationRegistry
from usersvc.storage.errors import StoreUnavailable
from usersvc.storage.memory import MemoryStore
from usersvc.storage.redis_cache import RedisCache


class FakeAsyncRedis:
    def __init__(self, fail=False):
        self.data = {}
        self.expiry = {}
        self.fail = fail

    async def set(self, key, value, ex=None, nx=False):
        if self.fail:
            raise RedisConnectionError("connection refused")
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return self.data.get(key)


def _cache(client) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.client = client
    return cache


def test_rate_keys_are_hashed():
    key = RedisCache._normalize_rate_key("login:1.2.3.4")
    assert key.startswith("rate:")
    assert "1.2.3.4" not in key


@pytest.mark.asyncio
async def test_revocation_is_set_once_with_ttl():
    client = FakeAsyncRedis()
    cache = _cache(client)

    assert await cache.add_revocation("fp", {"reason": "logout"}, 120) is True
    assert await cache.add_revocation("fp", {"reason": "rotated"}, 120) is False
    assert client.expiry["auth:revoked:fp"] == 120
    assert json.loads(client.data["auth:revoked:fp"]) == {"reason": "logout"}
    assert await cache.get_revocation("fp") == {"reason": "logout"}
    assert await cache.get_revocation("other") is None


@pytest.mark.asyncio
async def test_outage_maps_to_store_unavailable():
    cache = _cache(FakeAsyncRedis(fail=True))
    with pytest.raises(StoreUnavailable):
        await cache.get_revocation("fp")


@pytest.mark.asyncio
async def test_registry_uses_cache_with_remaining_lifetime():
    client = FakeAsyncRedis()
    clock = FakeClock()
    store = MemoryStore()
    registry = RevocationRegistry(
        store,
        _cache(client),
        max_token_lifetime=timedelta(days=7),
        timeout_seconds=5.0,
        clock=clock,
    )

    await registry.revoke("tok", "u1", expires_at=clock() + timedelta(minutes=30))

    assert await registry.is_revoked("tok")
    assert list(client.expiry.values()) == [1800]
    assert store.revocations == {}
    assert await registry.purge_expired() == 0


@pytest.mark.asyncio
async def test_registry_reports_outage_as_service_unavailable():
    registry = RevocationRegistry(
        MemoryStore(),
        _cache(FakeAsyncRedis(fail=True)),
        max_token_lifetime=timedelta(days=7),
        timeout_seconds=5.0,
    )
    with pytest.raises(StoreUnavailableError):
        await registry.is_revoked("tok")
