from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy import delete, select

from app.core.crypto import EncryptedRecord, seal, unseal
from app.core.errors import VaultError
from app.core.fmt import short_address
from app.db.models import PrivateKeyRecord

logger = logging.getLogger(__name__)


@dataclass
class _AddressLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def vault_key(address: str) -> str:
    return str(address or "").strip().lower()


class VaultBackend(Protocol):
    async def upsert(self, key: str, record: EncryptedRecord) -> bool: ...

    async def get(self, key: str) -> EncryptedRecord | None: ...

    async def delete(self, key: str) -> bool: ...


class SqlVaultBackend:
    """``private_keys`` table; one row per lower-cased wallet address."""

    def __init__(self, db_factory) -> None:
        self.db_factory = db_factory

    async def upsert(self, key: str, record: EncryptedRecord) -> bool:
        async with self.db_factory() as session:
            row = await session.get(PrivateKeyRecord, key)
            now = datetime.utcnow()
            if row is None:
                row = PrivateKeyRecord(wallet_address=key, created_at=now)
                session.add(row)
            row.ciphertext = record.ciphertext
            row.nonce = record.nonce
            row.salt = record.salt
            row.updated_at = now
            await session.commit()
            return True

    async def get(self, key: str) -> EncryptedRecord | None:
        async with self.db_factory() as session:
            q = await session.execute(select(PrivateKeyRecord).where(PrivateKeyRecord.wallet_address == key))
            row = q.scalar_one_or_none()
            if row is None:
                return None
            return EncryptedRecord(ciphertext=row.ciphertext, nonce=row.nonce, salt=row.salt)

    async def delete(self, key: str) -> bool:
        async with self.db_factory() as session:
            await session.execute(delete(PrivateKeyRecord).where(PrivateKeyRecord.wallet_address == key))
            await session.commit()
            return True


class KeyVaultService:
    """Encrypts, stores and returns wallet private keys.

    ``store`` reports persistence problems as ``False`` and ``retrieve`` reports every failure as
    ``None``; callers never learn whether a miss was a missing row or a record that failed
    authentication. Operations on the same address are serialized; different addresses run
    concurrently. Key derivation runs in a worker thread.
    """

    def __init__(self, backend: VaultBackend, master_password: str | bytes) -> None:
        if not master_password:
            raise ValueError("vault master password is required")
        self.backend = backend
        self._passphrase = master_password.encode("utf-8") if isinstance(master_password, str) else bytes(master_password)
        self._locks: dict[str, _AddressLock] = {}

    @asynccontextmanager
    async def _serialized(self, key: str):
        """Hold the per-address lock. The entry lives while anyone holds or waits on it."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _AddressLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def store(self, wallet_address: str, private_key: str) -> bool:
        key = vault_key(wallet_address)
        if not key or not private_key:
            return False
        async with self._serialized(key):
            try:
                record = await asyncio.to_thread(seal, private_key.encode("utf-8"), self._passphrase)
            except VaultError as exc:
                logger.error(
                    "vault_encrypt_failed",
                    extra={"event": "vault_encrypt_failed", "wallet": short_address(key), "reason": exc.__class__.__name__},
                )
                return False
            try:
                ok = bool(await self.backend.upsert(key, record))
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "vault_store_failed",
                    extra={"event": "vault_store_failed", "wallet": short_address(key), "reason": exc.__class__.__name__},
                )
                return False
        if ok:
            logger.info("vault_stored", extra={"event": "vault_stored", "wallet": short_address(key)})
        else:
            logger.error("vault_store_failed", extra={"event": "vault_store_failed", "wallet": short_address(key), "reason": "not_written"})
        return ok

    async def retrieve(self, wallet_address: str) -> str | None:
        key = vault_key(wallet_address)
        if not key:
            return None
        async with self._serialized(key):
            try:
                record = await self.backend.get(key)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "vault_read_failed",
                    extra={"event": "vault_read_failed", "wallet": short_address(key), "reason": exc.__class__.__name__},
                )
                return None
            if record is None:
                logger.info("vault_miss", extra={"event": "vault_miss", "wallet": short_address(key), "reason": "no_record"})
                return None
            try:
                plaintext = await asyncio.to_thread(unseal, record, self._passphrase)
            except VaultError as exc:
                logger.warning(
                    "vault_miss",
                    extra={"event": "vault_miss", "wallet": short_address(key), "reason": exc.__class__.__name__},
                )
                return None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("vault_miss", extra={"event": "vault_miss", "wallet": short_address(key), "reason": "decode"})
            return None

    async def delete(self, wallet_address: str) -> bool:
        key = vault_key(wallet_address)
        if not key:
            return True
        async with self._serialized(key):
            try:
                await self.backend.delete(key)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "vault_delete_failed",
                    extra={"event": "vault_delete_failed", "wallet": short_address(key), "reason": exc.__class__.__name__},
                )
                return False
        logger.info("vault_deleted", extra={"event": "vault_deleted", "wallet": short_address(key)})
        return True
