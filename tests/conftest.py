from __future__ import annotations

import asyncio
import dataclasses

import nacl.pwhash
import pytest

from app.core import crypto
from app.core.crypto import EncryptedRecord, seal
from app.core.errors import UpstreamError
from app.core.trading import ExecutionResult
from app.services.conversations import ConversationStore, ProfileCache
from app.services.operations import OperationMachine
from app.services.profiles import ProfileService
from app.services.users import DEFAULT_SETTINGS, UserProfile, WalletInfo, validate_settings_update
from app.services.vault import KeyVaultService, vault_key

CHAT_ID = 42
WALLET = "0x" + "11" * 20
TOKEN = "0x" + "22" * 20
RECIPIENT = "0x" + "33" * 20
PRIVATE_KEY = "0x" + "ab" * 30 + "c0de"
MASTER = "masterpass123-test"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryProfileStore:
    def __init__(self) -> None:
        self.profiles: dict[int, UserProfile] = {}
        self.reads = 0
        self.fail_reads = False
        self.fail_add_wallet = False

    async def get_profile(self, chat_id: int) -> UserProfile | None:
        self.reads += 1
        if self.fail_reads:
            raise RuntimeError("store down")
        return self.profiles.get(chat_id)

    async def accept_terms(self, chat_id: int) -> None:
        current = self.profiles.get(chat_id) or UserProfile(chat_id=chat_id)
        self.profiles[chat_id] = dataclasses.replace(current, terms_accepted=True)

    async def add_wallet(self, chat_id: int, address: str, chain: str) -> WalletInfo:
        if self.fail_add_wallet:
            raise RuntimeError("insert failed")
        wallet = WalletInfo(address=address, chain=chain)
        current = self.profiles.get(chat_id) or UserProfile(chat_id=chat_id)
        self.profiles[chat_id] = dataclasses.replace(current, wallets=current.wallets + (wallet,))
        return wallet

    async def update_settings(self, chat_id: int, updates: dict) -> dict:
        clean = validate_settings_update(updates)
        current = self.profiles.get(chat_id) or UserProfile(chat_id=chat_id)
        merged = {**DEFAULT_SETTINGS, **(current.settings or {}), **clean}
        self.profiles[chat_id] = dataclasses.replace(current, settings=merged)
        return merged


class MemoryVaultBackend:
    def __init__(self) -> None:
        self.records: dict[str, EncryptedRecord] = {}
        self.fail_upsert = False
        self.fail_get = False
        self.deleted: list[str] = []

    async def upsert(self, key: str, record: EncryptedRecord) -> bool:
        if self.fail_upsert:
            raise RuntimeError("disk full")
        self.records[key] = record
        return True

    async def get(self, key: str) -> EncryptedRecord | None:
        if self.fail_get:
            raise RuntimeError("connection reset")
        return self.records.get(key)

    async def delete(self, key: str) -> bool:
        self.deleted.append(key)
        self.records.pop(key, None)
        return True


class DummyBalances:
    def __init__(self, native: float = 0.0, tokens: dict[str, float] | None = None) -> None:
        self.native = native
        self.tokens = {k.lower(): v for k, v in (tokens or {}).items()}
        self.calls: list[tuple[str, str | None]] = []
        self.fail = False

    async def get_native_balance(self, wallet_address: str) -> float:
        self.calls.append((wallet_address, None))
        if self.fail:
            raise UpstreamError("rpc unavailable")
        return self.native

    async def get_token_balance(self, wallet_address: str, token_address: str) -> float:
        self.calls.append((wallet_address, token_address))
        if self.fail:
            raise UpstreamError("rpc unavailable")
        return self.tokens.get(token_address.lower(), 0.0)


class DummyExecutor:
    def __init__(self, result: ExecutionResult | None = None, delay: float = 0.0, exc: Exception | None = None) -> None:
        self.result = result or ExecutionResult(success=True, reference="0xdeadbeef")
        self.delay = delay
        self.exc = exc
        self.calls: list[dict] = []

    async def execute(self, order, private_key, wallet_address, settings, idempotency_key) -> ExecutionResult:
        self.calls.append(
            {
                "order": order,
                "private_key": private_key,
                "wallet": wallet_address,
                "settings": settings,
                "idempotency_key": idempotency_key,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result


class DummyJournal:
    def __init__(self, fail_open: bool = False) -> None:
        self.fail_open = fail_open
        self.opened: list[dict] = []
        self.closed: list[tuple] = []
        self.entries: list = []

    async def open(self, user_id, wallet_address, order, idempotency_key) -> int:
        if self.fail_open:
            raise RuntimeError("db down")
        self.opened.append({"user_id": user_id, "wallet": wallet_address, "order": order, "key": idempotency_key})
        return len(self.opened)

    async def close(self, row_id, status, reference=None, reason=None) -> None:
        self.closed.append((row_id, status, reference, reason))

    async def recent(self, user_id, limit=10) -> list:
        return list(self.entries[:limit])

    async def status_counts(self, user_id) -> dict:
        counts: dict[str, int] = {}
        for entry in self.entries:
            counts[entry.status] = counts.get(entry.status, 0) + 1
        return counts


class RecordingMessenger:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str, object]] = []
        self.deleted: list[tuple[int, int, float]] = []

    async def send(self, chat_id: int, text: str, menu=None) -> int:
        self.sent.append((chat_id, text, menu))
        return len(self.sent)

    async def edit(self, chat_id: int, message_id: int, text: str, menu=None) -> None:
        self.sent.append((chat_id, text, menu))

    def delete_later(self, chat_id: int, message_id: int, delay: float) -> None:
        self.deleted.append((chat_id, message_id, delay))


@pytest.fixture
def fast_kdf(monkeypatch):
    monkeypatch.setattr(crypto, "KDF_OPSLIMIT", nacl.pwhash.argon2id.OPSLIMIT_MIN)
    monkeypatch.setattr(crypto, "KDF_MEMLIMIT", nacl.pwhash.argon2id.MEMLIMIT_MIN)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def conversations(clock) -> ConversationStore:
    return ConversationStore(clock=clock)


@pytest.fixture
def profile_store() -> MemoryProfileStore:
    store = MemoryProfileStore()
    store.profiles[CHAT_ID] = UserProfile(
        chat_id=CHAT_ID,
        terms_accepted=True,
        wallets=(WalletInfo(address=WALLET, chain="base"),),
        settings=DEFAULT_SETTINGS.copy(),
        user_id=7,
    )
    return store


@pytest.fixture
def profiles(profile_store, conversations) -> ProfileService:
    return ProfileService(profile_store, ProfileCache(conversations, ttl_sec=300))


@pytest.fixture
def vault_backend(fast_kdf) -> MemoryVaultBackend:
    backend = MemoryVaultBackend()
    backend.records[vault_key(WALLET)] = seal(PRIVATE_KEY.encode("utf-8"), MASTER.encode("utf-8"))
    return backend


@pytest.fixture
def vault(vault_backend) -> KeyVaultService:
    return KeyVaultService(vault_backend, MASTER)


@pytest.fixture
def balances() -> DummyBalances:
    return DummyBalances(native=40.0, tokens={TOKEN: 100.0})


@pytest.fixture
def executor() -> DummyExecutor:
    return DummyExecutor()


@pytest.fixture
def journal() -> DummyJournal:
    return DummyJournal()


@pytest.fixture
def machine(conversations, profiles, vault, balances, executor, journal) -> OperationMachine:
    return OperationMachine(
        conversations=conversations,
        profiles=profiles,
        vault=vault,
        balances=balances,
        executor=executor,
        journal=journal,
        executor_timeout=0.5,
    )
