from __future__ import annotations

import pytest

from app.services.conversations import ConversationStore, ProfileCache
from app.services.users import UserProfile

from conftest import FakeClock


def _profile(**kwargs) -> UserProfile:
    return UserProfile(chat_id=1, terms_accepted=True, settings={"slippage": "0.5", "gas_priority": "fast"}, **kwargs)


def test_cache_entry_expires_exactly_at_ttl() -> None:
    clock = FakeClock()
    cache = ProfileCache(ConversationStore(clock=clock), ttl_sec=300)
    cache.set(1, _profile())

    clock.advance(300 - 0.001)
    assert cache.get(1) is not None
    clock.advance(0.002)
    assert cache.get(1) is None


def test_merge_update_merges_settings_and_restarts_ttl() -> None:
    clock = FakeClock()
    cache = ProfileCache(ConversationStore(clock=clock), ttl_sec=300)
    cache.set(1, _profile())

    clock.advance(200)
    merged = cache.merge_update(1, settings={"slippage": "1"})
    assert merged.settings == {"slippage": "1", "gas_priority": "fast"}

    clock.advance(200)
    cached = cache.get(1)
    assert cached is not None
    assert cached.settings["slippage"] == "1"


def test_merge_update_without_live_entry_is_noop() -> None:
    cache = ProfileCache(ConversationStore(clock=FakeClock()), ttl_sec=300)
    assert cache.merge_update(1, terms_accepted=True) is None
    assert cache.get(1) is None


def test_invalidate_drops_entry() -> None:
    cache = ProfileCache(ConversationStore(clock=FakeClock()), ttl_sec=300)
    cache.set(1, _profile())
    cache.invalidate(1)
    assert cache.get(1) is None


def test_evict_idle_drops_only_stale_conversations() -> None:
    clock = FakeClock()
    store = ConversationStore(clock=clock)
    store.lock(1)
    clock.advance(50)
    store.lock(2)
    clock.advance(60)

    removed = store.evict_idle(100)
    assert removed == 1
    assert 1 not in store
    assert 2 in store


@pytest.mark.asyncio
async def test_evict_idle_skips_locked_conversations() -> None:
    clock = FakeClock()
    store = ConversationStore(clock=clock)
    lock = store.lock(1)
    async with lock:
        clock.advance(1000)
        assert store.evict_idle(100) == 0
    assert store.evict_idle(100) == 1
    assert len(store) == 0


def test_lock_is_per_chat() -> None:
    store = ConversationStore(clock=FakeClock())
    assert store.lock(1) is store.lock(1)
    assert store.lock(1) is not store.lock(2)
