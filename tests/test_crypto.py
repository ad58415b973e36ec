from __future__ import annotations

import base64
import dataclasses

import pytest

from app.core import crypto
from app.core.crypto import EncryptedRecord, decrypt, derive_key, derived_key, encrypt, seal, unseal
from app.core.errors import AuthError, DerivationError


def test_kdf_parameters_are_fixed() -> None:
    assert crypto.KDF_OPSLIMIT == 3
    assert crypto.KDF_MEMLIMIT == 64 * 1024 * 1024
    assert crypto.KEY_SIZE == 32
    assert crypto.NONCE_SIZE == 24


def test_seal_unseal_recovers_plaintext() -> None:
    record = seal(b"0xabc123", b"masterpass123")
    assert unseal(record, b"masterpass123") == b"0xabc123"


def test_seal_uses_fresh_salt_and_nonce(fast_kdf) -> None:
    a = seal(b"same", b"pw")
    b = seal(b"same", b"pw")
    assert a.salt != b.salt
    assert a.nonce != b.nonce
    assert a.ciphertext != b.ciphertext


def test_derive_key_is_deterministic(fast_kdf) -> None:
    salt = b"\x01" * crypto.SALT_SIZE
    assert derive_key(b"pw", salt) == derive_key(b"pw", salt)
    assert derive_key(b"pw", salt) != derive_key(b"other", salt)


def test_derive_key_rejects_short_salt() -> None:
    with pytest.raises(DerivationError):
        derive_key(b"pw", b"short")


def test_derived_key_is_zeroed_after_use(fast_kdf) -> None:
    with derived_key(b"pw", b"\x02" * crypto.SALT_SIZE) as key:
        held = key
        assert any(held)
    assert held == bytearray(len(held))


def test_wrong_passphrase_fails_authentication(fast_kdf) -> None:
    record = seal(b"secret", b"right")
    with pytest.raises(AuthError):
        unseal(record, b"wrong")


def test_tampered_ciphertext_fails_authentication(fast_kdf) -> None:
    record = seal(b"secret", b"pw")
    raw = bytearray(base64.b64decode(record.ciphertext))
    raw[0] ^= 0x01
    tampered = dataclasses.replace(record, ciphertext=base64.b64encode(bytes(raw)).decode("ascii"))
    with pytest.raises(AuthError):
        unseal(tampered, b"pw")


def test_bad_nonce_size_fails_authentication() -> None:
    key = b"\x00" * crypto.KEY_SIZE
    ciphertext, _ = encrypt(b"x", key)
    with pytest.raises(AuthError):
        decrypt(ciphertext, b"\x00" * 12, key)


def test_invalid_base64_is_an_auth_error(fast_kdf) -> None:
    record = seal(b"secret", b"pw")
    with pytest.raises(AuthError):
        unseal(dataclasses.replace(record, nonce="not base64!!"), b"pw")


def test_record_dict_round_trip() -> None:
    record = EncryptedRecord(ciphertext="YQ==", nonce="Yg==", salt="Yw==")
    assert EncryptedRecord.from_dict(record.to_dict()) == record


@pytest.mark.parametrize("field", ["nonce", "salt"])
def test_flipped_nonce_or_salt_fails_authentication(fast_kdf, field: str) -> None:
    record = seal(b"secret", b"pw")
    raw = bytearray(base64.b64decode(getattr(record, field)))
    raw[-1] ^= 0x80
    tampered = dataclasses.replace(record, **{field: base64.b64encode(bytes(raw)).decode("ascii")})
    with pytest.raises(AuthError):
        unseal(tampered, b"pw")
