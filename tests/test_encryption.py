"""
Tests for per-file encryption.
"""

import base64

import pytest

from depin_storage.config import set_config_value
from depin_storage.encryption import (
    CIPHER_AES_CBC,
    CIPHER_SECRETBOX,
    KDF_ITERATIONS,
    SALT_LENGTH,
    EncryptionEngine,
    derive_file_key,
)
from depin_storage.errors import ConfigurationError, DecryptionError

ADDRESS = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
SECRET = "//Alice"


@pytest.fixture(params=[CIPHER_SECRETBOX, CIPHER_AES_CBC])
def engine(request):
    return EncryptionEngine(cipher=request.param, iterations=1000)


def test_roundtrip(engine):
    data = b"The quick brown fox" * 100

    payload = engine.encrypt(data, ADDRESS, SECRET)

    assert payload.ciphertext != data
    assert len(base64.b64decode(payload.salt)) == SALT_LENGTH
    assert engine.decrypt(payload.ciphertext, ADDRESS, SECRET, payload.salt) == data


def test_empty_payload(engine):
    payload = engine.encrypt(b"", ADDRESS, SECRET)

    assert engine.decrypt(payload.ciphertext, ADDRESS, SECRET, payload.salt) == b""


def test_fresh_salt_per_file(engine):
    first = engine.encrypt(b"same", ADDRESS, SECRET)
    second = engine.encrypt(b"same", ADDRESS, SECRET)

    assert first.salt != second.salt
    assert first.ciphertext != second.ciphertext


def test_key_depends_on_every_input():
    salt = b"\x01" * SALT_LENGTH
    key = derive_file_key(ADDRESS, SECRET, salt, 1000)

    assert len(key) == 32
    assert key == derive_file_key(ADDRESS, SECRET, salt, 1000)
    assert key != derive_file_key(ADDRESS, "//Bob", salt, 1000)
    assert key != derive_file_key(ADDRESS, SECRET, b"\x02" * SALT_LENGTH, 1000)


def test_missing_secret():
    with pytest.raises(ConfigurationError):
        derive_file_key(ADDRESS, "", b"\x00" * SALT_LENGTH)


def test_wrong_secret_fails_authenticated_cipher():
    engine = EncryptionEngine(cipher=CIPHER_SECRETBOX, iterations=1000)
    payload = engine.encrypt(b"secret data", ADDRESS, SECRET)

    with pytest.raises(DecryptionError):
        engine.decrypt(payload.ciphertext, ADDRESS, "//Bob", payload.salt)


def test_tampered_ciphertext_fails():
    engine = EncryptionEngine(cipher=CIPHER_SECRETBOX, iterations=1000)
    payload = engine.encrypt(b"secret data", ADDRESS, SECRET)
    tampered = payload.ciphertext[:-1] + bytes([payload.ciphertext[-1] ^ 0xFF])

    with pytest.raises(DecryptionError):
        engine.decrypt(tampered, ADDRESS, SECRET, payload.salt)


def test_malformed_salt(engine):
    payload = engine.encrypt(b"data", ADDRESS, SECRET)

    with pytest.raises(DecryptionError):
        engine.decrypt(payload.ciphertext, ADDRESS, SECRET, "not base64!")


def test_truncated_cbc_ciphertext():
    engine = EncryptionEngine(cipher=CIPHER_AES_CBC, iterations=1000)
    payload = engine.encrypt(b"data", ADDRESS, SECRET)

    with pytest.raises(DecryptionError):
        engine.decrypt(payload.ciphertext[:20], ADDRESS, SECRET, payload.salt)


def test_unknown_cipher():
    with pytest.raises(ConfigurationError):
        EncryptionEngine(cipher="rot13")


def test_rejects_non_bytes(engine):
    with pytest.raises(TypeError):
        engine.encrypt("text", ADDRESS, SECRET)


def test_wrong_salt_fails_authenticated_cipher():
    engine = EncryptionEngine(cipher=CIPHER_SECRETBOX, iterations=1000)
    payload = engine.encrypt(b"secret data", ADDRESS, SECRET)
    other_salt = engine.encrypt(b"other", ADDRESS, SECRET).salt

    with pytest.raises(DecryptionError):
        engine.decrypt(payload.ciphertext, ADDRESS, SECRET, other_salt)


def test_defaults_ignore_config():
    set_config_value("encryption", "cipher", CIPHER_AES_CBC)
    set_config_value("encryption", "kdf_iterations", 1)

    engine = EncryptionEngine()

    assert engine.cipher == CIPHER_SECRETBOX
    assert engine.iterations == KDF_ITERATIONS


def test_files_stay_readable_across_engines():
    payload = EncryptionEngine().encrypt(b"written earlier", ADDRESS, SECRET)
    set_config_value("encryption", "kdf_iterations", 1)

    assert EncryptionEngine().decrypt(payload.ciphertext, ADDRESS, SECRET, payload.salt) == b"written earlier"
