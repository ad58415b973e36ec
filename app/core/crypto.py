"""Key derivation and authenticated encryption for the private key vault.

Argon2id (libsodium ``crypto_pwhash``) turns the master passphrase and a per-record salt into a
32-byte key; XChaCha20-Poly1305 (IETF) seals the plaintext under that key with a fresh 24-byte
nonce. The KDF parameters are fixed module constants: every stored record depends on them, so a
change means re-encrypting the whole vault.
"""

from __future__ import annotations

import base64
import binascii
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import nacl.bindings
import nacl.exceptions
import nacl.pwhash
import nacl.utils

from app.core.errors import AuthError, DerivationError

KDF_OPSLIMIT = 3
KDF_MEMLIMIT = 64 * 1024 * 1024
KEY_SIZE = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_KEYBYTES
NONCE_SIZE = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_NPUBBYTES
SALT_SIZE = nacl.pwhash.argon2id.SALTBYTES


@dataclass(frozen=True)
class EncryptedRecord:
    """At-rest vault record. All three fields are standard base64 text."""

    ciphertext: str
    nonce: str
    salt: str

    def to_dict(self) -> dict[str, str]:
        return {"ciphertext": self.ciphertext, "nonce": self.nonce, "salt": self.salt}

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedRecord":
        return cls(ciphertext=str(data["ciphertext"]), nonce=str(data["nonce"]), salt=str(data["salt"]))


def derive_key(passphrase: bytes, salt: bytes) -> bytearray:
    if len(salt) != SALT_SIZE:
        raise DerivationError(f"salt must be {SALT_SIZE} bytes")
    try:
        raw = nacl.pwhash.argon2id.kdf(
            KEY_SIZE,
            bytes(passphrase),
            bytes(salt),
            opslimit=KDF_OPSLIMIT,
            memlimit=KDF_MEMLIMIT,
        )
    except (nacl.exceptions.CryptoError, MemoryError) as exc:
        raise DerivationError(f"argon2id derivation failed: {exc.__class__.__name__}") from exc
    return bytearray(raw)


@contextmanager
def derived_key(passphrase: bytes, salt: bytes) -> Iterator[bytearray]:
    """Derive a key for the duration of the block and zero the buffer afterwards."""
    key = derive_key(passphrase, salt)
    try:
        yield key
    finally:
        for i in range(len(key)):
            key[i] = 0


def encrypt(plaintext: bytes, key: bytes | bytearray) -> tuple[bytes, bytes]:
    """Returns ``(ciphertext_with_tag, nonce)``."""
    nonce = nacl.utils.random(NONCE_SIZE)
    ciphertext = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(bytes(plaintext), None, nonce, bytes(key))
    return ciphertext, nonce


def decrypt(ciphertext: bytes, nonce: bytes, key: bytes | bytearray) -> bytes:
    if len(nonce) != NONCE_SIZE:
        raise AuthError("nonce has the wrong size")
    try:
        return nacl.bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(bytes(ciphertext), None, bytes(nonce), bytes(key))
    except (nacl.exceptions.CryptoError, ValueError, TypeError) as exc:
        raise AuthError("ciphertext failed authentication") from exc


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise AuthError("record is not valid base64") from exc


def seal(plaintext: bytes, passphrase: bytes) -> EncryptedRecord:
    """Encrypt under a key derived from ``passphrase`` and a fresh salt."""
    salt = nacl.utils.random(SALT_SIZE)
    with derived_key(passphrase, salt) as key:
        ciphertext, nonce = encrypt(plaintext, key)
    return EncryptedRecord(ciphertext=_b64(ciphertext), nonce=_b64(nonce), salt=_b64(salt))


def unseal(record: EncryptedRecord, passphrase: bytes) -> bytes:
    """Inverse of :func:`seal`. Raises ``AuthError`` on any tampering or a wrong passphrase."""
    salt = _unb64(record.salt)
    nonce = _unb64(record.nonce)
    ciphertext = _unb64(record.ciphertext)
    if len(salt) != SALT_SIZE:
        raise AuthError("salt has the wrong size")
    with derived_key(passphrase, salt) as key:
        return decrypt(ciphertext, nonce, key)
