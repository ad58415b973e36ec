from __future__ import annotations

import dataclasses

import pytest

from app.core.errors import NotEligibleError, ValidationError

from conftest import CHAT_ID


@pytest.mark.asyncio
async def test_eligible_profile_is_served_from_cache(profiles, profile_store) -> None:
    await profiles.load(CHAT_ID)
    await profiles.load(CHAT_ID)
    assert profile_store.reads == 1

    await profiles.load(CHAT_ID, force_refresh=True)
    assert profile_store.reads == 2


@pytest.mark.asyncio
async def test_ineligible_snapshot_is_always_reread(profiles, profile_store) -> None:
    profile_store.profiles[CHAT_ID] = dataclasses.replace(profile_store.profiles[CHAT_ID], terms_accepted=False)
    await profiles.load(CHAT_ID)
    await profiles.load(CHAT_ID)
    assert profile_store.reads == 2
    assert await profiles.load(CHAT_ID, cache_only=True) is None


@pytest.mark.asyncio
async def test_store_failure_reads_as_absent(profiles, profile_store) -> None:
    profile_store.fail_reads = True
    assert await profiles.load(CHAT_ID) is None
    with pytest.raises(NotEligibleError) as exc:
        await profiles.require_eligible(CHAT_ID)
    assert exc.value.reason == "not_registered"


@pytest.mark.asyncio
async def test_accept_terms_updates_cached_entry(profiles, profile_store) -> None:
    profile_store.profiles[CHAT_ID] = dataclasses.replace(profile_store.profiles[CHAT_ID], terms_accepted=False)
    await profiles.load(CHAT_ID)
    await profiles.accept_terms(CHAT_ID)
    profile = await profiles.require_eligible(CHAT_ID)
    assert profile.terms_accepted is True


@pytest.mark.asyncio
async def test_update_settings_merges_into_cache(profiles, profile_store) -> None:
    await profiles.load(CHAT_ID)
    merged = await profiles.update_settings(CHAT_ID, {"slippage": "1"})
    assert merged["slippage"] == "1"
    assert merged["gas_priority"] == "standard"

    cached = await profiles.load(CHAT_ID, cache_only=True)
    assert cached.effective_settings()["slippage"] == "1"
    assert profile_store.reads == 1


@pytest.mark.asyncio
async def test_update_settings_rejects_unknown_values(profiles) -> None:
    with pytest.raises(ValidationError):
        await profiles.update_settings(CHAT_ID, {"slippage": "50"})
    with pytest.raises(ValidationError):
        await profiles.update_settings(CHAT_ID, {"theme": "dark"})
