from __future__ import annotations

import pytest

from app.core.errors import NotEligibleError, WalletExistsError
from app.core.trading import OperationKind
from app.services.users import UserProfile
from app.services.vault import vault_key
from app.services.wallets import WalletService, generate_keypair

from conftest import CHAT_ID, MemoryProfileStore

NEW_ADDRESS = "0x" + "55" * 20
NEW_KEY = "0x" + "cd" * 32


def _keygen() -> tuple[str, str]:
    return NEW_ADDRESS, NEW_KEY


@pytest.fixture
def fresh_store(profile_store: MemoryProfileStore) -> MemoryProfileStore:
    profile_store.profiles[CHAT_ID] = UserProfile(chat_id=CHAT_ID, terms_accepted=True, user_id=7)
    return profile_store


def test_generate_keypair_shape() -> None:
    address, private_key = generate_keypair()
    assert address.startswith("0x") and len(address) == 42
    assert private_key.startswith("0x") and len(private_key) == 66


@pytest.mark.asyncio
async def test_create_wallet_stores_key_then_links(fresh_store, profiles, vault, vault_backend) -> None:
    service = WalletService(profiles, vault, keygen=_keygen)
    created = await service.create_wallet(CHAT_ID)
    assert created.secured is True
    assert created.private_key == NEW_KEY
    assert vault_key(NEW_ADDRESS) in vault_backend.records
    assert fresh_store.profiles[CHAT_ID].wallets[0].address == NEW_ADDRESS
    assert await vault.retrieve(NEW_ADDRESS) == NEW_KEY


@pytest.mark.asyncio
async def test_new_wallet_is_immediately_eligible(fresh_store, profiles, vault, machine) -> None:
    with pytest.raises(NotEligibleError):
        await machine.start(CHAT_ID, OperationKind.BUY)
    await WalletService(profiles, vault, keygen=_keygen).create_wallet(CHAT_ID)
    result = await machine.start(CHAT_ID, OperationKind.KEY_VERIFICATION)
    assert result.field == "last4"


@pytest.mark.asyncio
async def test_unsecured_wallet_is_not_linked(fresh_store, profiles, vault, vault_backend) -> None:
    vault_backend.fail_upsert = True
    created = await WalletService(profiles, vault, keygen=_keygen).create_wallet(CHAT_ID)
    assert created.secured is False
    assert created.private_key is None
    assert fresh_store.profiles[CHAT_ID].wallets == ()


@pytest.mark.asyncio
async def test_link_failure_removes_vaulted_key(fresh_store, profiles, vault, vault_backend) -> None:
    fresh_store.fail_add_wallet = True
    with pytest.raises(RuntimeError):
        await WalletService(profiles, vault, keygen=_keygen).create_wallet(CHAT_ID)
    assert vault_key(NEW_ADDRESS) not in vault_backend.records


@pytest.mark.asyncio
async def test_existing_wallet_is_refused(profiles, vault) -> None:
    with pytest.raises(WalletExistsError):
        await WalletService(profiles, vault, keygen=_keygen).create_wallet(CHAT_ID)


@pytest.mark.asyncio
async def test_terms_required_before_wallet(fresh_store, profiles, vault) -> None:
    fresh_store.profiles[CHAT_ID] = UserProfile(chat_id=CHAT_ID)
    with pytest.raises(NotEligibleError) as exc:
        await WalletService(profiles, vault, keygen=_keygen).create_wallet(CHAT_ID)
    assert exc.value.reason == "terms_not_accepted"
