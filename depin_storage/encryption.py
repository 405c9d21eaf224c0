"""
Per-file encryption for stored payloads.

Every file gets its own key, derived with PBKDF2 from the owner's wallet
address and signing secret plus a fresh random salt. The salt is not secret
but it is the only way to re-derive the key: it is stored with the file's
metadata and losing it loses the file.
"""

import base64
import logging
import os
from typing import NamedTuple, Optional

import nacl.exceptions
import nacl.secret
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from depin_storage.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 100000
KEY_LENGTH = 32  # 256 bits
SALT_LENGTH = 16
AES_BLOCK_BITS = 128
IV_LENGTH = AES_BLOCK_BITS // 8

CIPHER_SECRETBOX = "secretbox"
CIPHER_AES_CBC = "aes-256-cbc"
SUPPORTED_CIPHERS = (CIPHER_SECRETBOX, CIPHER_AES_CBC)


class EncryptedPayload(NamedTuple):
    """Ciphertext plus the base64 salt needed to re-derive its key."""

    ciphertext: bytes
    salt: str


def generate_salt() -> bytes:
    """Generate a fresh random salt for one file."""
    return os.urandom(SALT_LENGTH)


def derive_file_key(
    wallet_address: str,
    secret: str,
    salt: bytes,
    iterations: int = KDF_ITERATIONS,
) -> bytes:
    """
    Derive a 256-bit file key from wallet credential material.

    Args:
        wallet_address: Address of the owning account
        secret: The account's signing secret
        salt: Per-file random salt
        iterations: PBKDF2 iteration count

    Returns:
        bytes: 32-byte symmetric key
    """
    if not wallet_address or not secret:
        raise ConfigurationError("Wallet address and secret are required to derive a file key")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(f"{wallet_address}{secret}".encode("utf-8"))


class EncryptionEngine:
    """
    Encrypts and decrypts file payloads with per-file derived keys.

    The default ``secretbox`` cipher is authenticated (XSalsa20-Poly1305), so a
    wrong key, a wrong salt or tampered ciphertext always fails loudly.
    ``aes-256-cbc`` (random IV prepended, PKCS7 padding) is available for
    interoperability but carries no integrity tag: garbage can occasionally
    survive the padding check.

    The cipher and iteration count are not stored with a file, so they are
    constants here rather than config values.
    """

    def __init__(self, cipher: str = CIPHER_SECRETBOX, iterations: int = KDF_ITERATIONS):
        if cipher not in SUPPORTED_CIPHERS:
            raise ConfigurationError(f"Unsupported cipher {cipher!r}, expected one of {SUPPORTED_CIPHERS}")

        self.cipher = cipher
        self.iterations = int(iterations)

    def encrypt(self, data: bytes, wallet_address: str, secret: str) -> EncryptedPayload:
        """
        Encrypt a payload under a freshly salted key.

        Args:
            data: Plaintext bytes
            wallet_address: Address of the owning account
            secret: The account's signing secret

        Returns:
            EncryptedPayload: ciphertext and base64-encoded salt
        """
        if not isinstance(data, bytes):
            raise TypeError("Data must be bytes")

        salt = generate_salt()
        key = derive_file_key(wallet_address, secret, salt, self.iterations)

        if self.cipher == CIPHER_SECRETBOX:
            # Nonce is generated and embedded in the output
            ciphertext = bytes(nacl.secret.SecretBox(key).encrypt(data))
        else:
            ciphertext = self._encrypt_cbc(key, data)

        return EncryptedPayload(ciphertext=ciphertext, salt=base64.b64encode(salt).decode("utf-8"))

    def decrypt(self, ciphertext: bytes, wallet_address: str, secret: str, salt: str) -> bytes:
        """
        Decrypt a payload produced by :meth:`encrypt`.

        Args:
            ciphertext: Encrypted bytes as fetched from the content store
            wallet_address: Address of the owning account
            secret: The account's signing secret
            salt: Base64 salt stored with the file metadata

        Returns:
            bytes: The original plaintext

        Raises:
            DecryptionError: If the salt or ciphertext is malformed or the key is wrong
        """
        try:
            salt_bytes = base64.b64decode(salt, validate=True)
        except (ValueError, TypeError) as e:
            raise DecryptionError(f"Malformed encryption salt: {e}")

        key = derive_file_key(wallet_address, secret, salt_bytes, self.iterations)

        if self.cipher == CIPHER_SECRETBOX:
            try:
                return nacl.secret.SecretBox(key).decrypt(ciphertext)
            except (nacl.exceptions.CryptoError, ValueError, TypeError) as e:
                raise DecryptionError(
                    f"Decryption failed: {e}. Incorrect key or corrupted data?"
                )

        return self._decrypt_cbc(key, ciphertext)

    @staticmethod
    def _encrypt_cbc(key: bytes, data: bytes) -> bytes:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(AES_BLOCK_BITS).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        return iv + encryptor.update(padded) + encryptor.finalize()

    @staticmethod
    def _decrypt_cbc(key: bytes, ciphertext: bytes) -> bytes:
        body = ciphertext[IV_LENGTH:]
        if len(ciphertext) < 2 * IV_LENGTH or len(body) % IV_LENGTH:
            raise DecryptionError("Malformed ciphertext: missing IV or truncated block")

        decryptor = Cipher(algorithms.AES(key), modes.CBC(ciphertext[:IV_LENGTH])).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()

        unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            raise DecryptionError("Decryption failed: invalid padding. Incorrect key or corrupted data?")
