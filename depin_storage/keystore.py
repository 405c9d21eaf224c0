"""
Local credential storage.

The signing secret (mnemonic, dev URI or hex seed) is kept on disk encrypted
with a password-derived key and is captured interactively at most once per
process.
"""

import base64
import getpass
import json
import logging
import os
from typing import Optional, Tuple

import nacl.exceptions
import nacl.secret
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from mnemonic import Mnemonic
from substrateinterface import Keypair

from depin_storage.config import get_config_value, get_keystore_path
from depin_storage.errors import ConfigurationError, KeystoreError

logger = logging.getLogger(__name__)

PASSWORD_ENV = "DEPIN_KEYSTORE_PASSWORD"
SECRET_ENV = "DEPIN_SECRET"
KEYSTORE_VERSION = 1


def _derive_key_from_password(password: str, salt: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """
    Derive an encryption key from a password using PBKDF2.

    Args:
        password: The user password
        salt: Optional salt bytes. If None, a new random salt is generated

    Returns:
        Tuple[bytes, bytes]: (derived_key, salt)
    """
    if salt is None:
        salt = os.urandom(16)

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,  # 32 bytes (256 bits) key
        salt=salt,
        iterations=100000,  # Recommended minimum by NIST
    )
    return kdf.derive(password.encode("utf-8")), salt


def keypair_from_secret(secret: str, ss58_format: Optional[int] = None) -> Keypair:
    """
    Build a signing keypair from any supported secret form.

    Args:
        secret: 0x-prefixed 32-byte hex seed, //Dev-style URI or mnemonic
        ss58_format: Address format (from config if None)

    Returns:
        Keypair: The signing keypair

    Raises:
        ConfigurationError: If the secret cannot be turned into a keypair
    """
    if ss58_format is None:
        ss58_format = get_config_value("ledger", "ss58_format", 42)

    secret = (secret or "").strip()
    if not secret:
        raise ConfigurationError("Signing secret cannot be empty")

    try:
        if secret.startswith("0x") and len(secret) == 66:
            return Keypair.create_from_seed(secret, ss58_format=ss58_format)
        if secret.startswith("//"):
            return Keypair.create_from_uri(secret, ss58_format=ss58_format)
        return Keypair.create_from_mnemonic(secret, ss58_format=ss58_format)
    except ValueError as e:
        raise ConfigurationError(f"Invalid signing secret: {e}")


def generate_mnemonic() -> str:
    """Generate a new random 12-word mnemonic phrase."""
    return Mnemonic("english").generate(strength=128)  # 128 bits = 12 words


def has_private_key(path: Optional[str] = None) -> bool:
    """True if a keystore file exists."""
    return os.path.exists(path or get_keystore_path())


def save_private_key(secret: str, password: str, path: Optional[str] = None) -> str:
    """
    Encrypt and persist a signing secret.

    Args:
        secret: The signing secret
        password: Password protecting the keystore
        path: Keystore file (from config if None)

    Returns:
        str: Address derived from the secret

    Raises:
        KeystoreError: If the file cannot be written
    """
    if not password:
        raise KeystoreError("A password is required to encrypt the keystore")

    address = keypair_from_secret(secret).ss58_address
    key, salt = _derive_key_from_password(password)
    encrypted = nacl.secret.SecretBox(key).encrypt(secret.strip().encode("utf-8"))

    path = path or get_keystore_path()
    payload = {
        "version": KEYSTORE_VERSION,
        "address": address,
        "salt": base64.b64encode(salt).decode("utf-8"),
        "secret": base64.b64encode(bytes(encrypted)).decode("utf-8"),
    }

    try:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        # Owner-only permissions from the moment the file exists
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f, indent=2)
    except OSError as e:
        raise KeystoreError(f"Could not save keystore to {path}: {e}")

    logger.info(f"Saved encrypted credential for {address} to {path}")
    return address


def _read_keystore(path: str) -> dict:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"No keystore found at {path}")
    except (OSError, json.JSONDecodeError) as e:
        raise KeystoreError(f"Could not read keystore {path}: {e}")

    if not data.get("secret") or not data.get("salt"):
        raise KeystoreError(f"Keystore {path} is missing encrypted data or salt")
    return data


def load_private_key(password: str, path: Optional[str] = None) -> str:
    """
    Decrypt the persisted signing secret.

    Args:
        password: Keystore password
        path: Keystore file (from config if None)

    Returns:
        str: The signing secret

    Raises:
        ConfigurationError: If no keystore exists
        KeystoreError: If the file is corrupt or the password is wrong
    """
    data = _read_keystore(path or get_keystore_path())

    key, _ = _derive_key_from_password(password, base64.b64decode(data["salt"]))
    try:
        secret = nacl.secret.SecretBox(key).decrypt(base64.b64decode(data["secret"]))
    except nacl.exceptions.CryptoError:
        raise KeystoreError("Could not decrypt keystore: wrong password?")

    return secret.decode("utf-8")


def get_stored_address(path: Optional[str] = None) -> Optional[str]:
    """Address recorded alongside the encrypted secret, readable without a password."""
    path = path or get_keystore_path()
    if not os.path.exists(path):
        return None
    return _read_keystore(path).get("address")


def clear_private_key(path: Optional[str] = None) -> bool:
    """
    Remove the keystore file.

    Returns:
        bool: True if a file was removed
    """
    path = path or get_keystore_path()
    if not os.path.exists(path):
        return False
    try:
        os.remove(path)
    except OSError as e:
        raise KeystoreError(f"Could not remove keystore {path}: {e}")
    return True


class CredentialSession:
    """
    Process-lifetime holder of the signing credential.

    The secret is resolved once: from an explicit value, the ``DEPIN_SECRET``
    environment variable, the keystore (password from
    ``DEPIN_KEYSTORE_PASSWORD`` or a prompt), or finally an interactive
    prompt that also saves it to the keystore.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        password: Optional[str] = None,
        path: Optional[str] = None,
        interactive: bool = True,
    ):
        self._secret = secret.strip() if secret else None
        self._password = password
        self._path = path
        self._interactive = interactive
        self._keypair: Optional[Keypair] = None

    def _get_password(self, confirm: bool = False) -> str:
        if self._password is None:
            self._password = os.getenv(PASSWORD_ENV)
        if self._password is None:
            if not self._interactive:
                raise ConfigurationError(f"Keystore password not provided (set {PASSWORD_ENV})")
            password = getpass.getpass("Enter keystore password: ")
            if confirm and password != getpass.getpass("Confirm password: "):
                raise KeystoreError("Passwords do not match")
            self._password = password
        return self._password

    def _resolve_secret(self) -> str:
        if self._secret:
            return self._secret

        env_secret = os.getenv(SECRET_ENV)
        if env_secret:
            return env_secret.strip()

        if has_private_key(self._path):
            return load_private_key(self._get_password(), self._path)

        if not self._interactive:
            raise ConfigurationError(
                "No signing credential available. Save one with 'depin-storage keystore save'"
            )

        secret = getpass.getpass("Enter your wallet secret (mnemonic, //URI or 0x seed): ").strip()
        if not secret:
            raise ConfigurationError("Wallet secret not provided")
        keypair_from_secret(secret)
        save_private_key(secret, self._get_password(confirm=True), self._path)
        return secret

    @property
    def secret(self) -> str:
        if self._secret is None:
            self._secret = self._resolve_secret()
        return self._secret

    @property
    def keypair(self) -> Keypair:
        if self._keypair is None:
            self._keypair = keypair_from_secret(self.secret)
        return self._keypair

    @property
    def address(self) -> str:
        return self.keypair.ss58_address
