"""
Utility functions for the DePIN storage client.

This module provides common utility functions used across the package.
"""

import datetime
import hashlib
from typing import Optional

import base58
from scalecodec.utils.ss58 import ss58_decode

ZERO_ACCOUNT_HEX = "00" * 32
BASE32_ALPHABET = set("abcdefghijklmnopqrstuvwxyz234567")


def utc_now() -> datetime.datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.datetime.now(datetime.timezone.utc)


def format_size(size_bytes: int) -> str:
    """
    Format a size in bytes to a human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        str: Human-readable size string (e.g., '1.23 MB', '456.78 KB')
    """
    if size_bytes >= 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"
    elif size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.2f} MB"
    elif size_bytes >= 1024:
        return f"{size_bytes / 1024:.2f} KB"
    else:
        return f"{size_bytes} bytes"


def format_storage_size(size_units: float) -> str:
    """
    Format a quantity of allocation units (GB) for display.

    Args:
        size_units: Storage quantity in allocation units

    Returns:
        str: '512.00MB' below one unit, '1.50GB' otherwise
    """
    if size_units < 1:
        return f"{size_units * 1024:.2f}MB"
    return f"{size_units:.2f}GB"


def is_valid_cid(cid: str) -> bool:
    """
    Check if a string is likely a valid IPFS CID.

    CIDv0 values are decoded and checked for the sha2-256 multihash prefix,
    CIDv1 values must be lowercase base32 with the "b" multibase prefix.

    Args:
        cid: String to check

    Returns:
        bool: True if it appears to be a valid CID
    """
    if not cid or not isinstance(cid, str):
        return False

    if cid.startswith("Qm"):
        try:
            raw = base58.b58decode(cid)
        except ValueError:
            return False
        return len(raw) == 34 and raw[0] == 0x12 and raw[1] == 0x20

    return cid.startswith("b") and len(cid) > 8 and set(cid[1:]) <= BASE32_ALPHABET


def normalize_account(address: Optional[str]) -> str:
    """
    Reduce an account identifier to its lowercase public-key hex.

    Accepts SS58 addresses and 0x-prefixed hex account ids. Values that
    cannot be decoded are lowercased as-is so comparisons still work.

    Args:
        address: Account address or None

    Returns:
        str: Normalized account key ("" for empty input)
    """
    if not address:
        return ""

    address = address.strip()
    if address.lower().startswith("0x"):
        return address[2:].lower()

    try:
        return ss58_decode(address).lower()
    except ValueError:
        return address.lower()


def is_zero_account(address: Optional[str]) -> bool:
    """True for the all-zero account the ledger returns for unknown entries."""
    normalized = normalize_account(address)
    return not normalized or set(normalized) == {"0"}


def accounts_match(left: Optional[str], right: Optional[str]) -> bool:
    """Case-insensitive comparison of two account identifiers."""
    left_key = normalize_account(left)
    return bool(left_key) and left_key == normalize_account(right)


def provider_id_for_address(address: str) -> str:
    """
    Derive the short provider id used as the index primary key.

    Args:
        address: Provider wallet address

    Returns:
        str: First 8 hex characters of sha256(normalized address)
    """
    return hashlib.sha256(normalize_account(address).encode("utf-8")).hexdigest()[:8]
