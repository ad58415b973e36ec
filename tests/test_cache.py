from __future__ import annotations

import pytest
from fakeredis.aioredis import FakeRedis

from app.core.cache import RedisCache


class BrokenRedis:
    async def set(self, *args, **kwargs):
        raise ConnectionError("redis down")


@pytest.fixture
def cache() -> RedisCache:
    return RedisCache(client=FakeRedis(), namespace="test")


def test_key_is_namespaced(cache) -> None:
    assert cache.key("confirm", "abc") == "test:confirm:abc"


@pytest.mark.asyncio
async def test_json_round_trip(cache) -> None:
    await cache.set_json(cache.key("orders", 1), {"ref": "lim-1"}, ttl=60)
    assert await cache.get_json(cache.key("orders", 1)) == {"ref": "lim-1"}
    assert await cache.get_json(cache.key("orders", 2)) is None


@pytest.mark.asyncio
async def test_claim_strict_only_once(cache) -> None:
    key = cache.key("confirm", "token")
    assert await cache.claim_strict(key, ttl=60) is True
    assert await cache.claim_strict(key, ttl=60) is False


@pytest.mark.asyncio
async def test_claim_strict_fails_closed_and_dedup_fails_open() -> None:
    cache = RedisCache(client=BrokenRedis())
    assert await cache.claim_strict("k", ttl=60) is False
    assert await cache.set_if_absent("k", ttl=60) is True


def test_requires_url_or_client() -> None:
    with pytest.raises(ValueError):
        RedisCache()
