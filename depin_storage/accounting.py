"""
Size and token accounting shared by the client and the ledger.

The ledger records file sizes in milli-units (1/1000 of an allocation unit)
and converts them back to whole units when it debits a client allocation.
Both sides must round the same way or quota accounting drifts, so the
rounding rule lives here as an explicit policy.
"""

import math
from decimal import Decimal
from typing import Union

from depin_storage.config import get_config_value

TOKEN_DECIMALS = 18
BASE_UNITS_PER_TOKEN = 10**TOKEN_DECIMALS
MILLI_UNITS_PER_UNIT = 1000
DEFAULT_BYTES_PER_UNIT = 1024 * 1024 * 1024

POLICY_CEIL_MIN_ONE = "ceil_min_one"
POLICY_EXACT = "exact"
SIZE_POLICIES = (POLICY_CEIL_MIN_ONE, POLICY_EXACT)


def to_base_units(tokens: Union[int, float, str, Decimal]) -> int:
    """
    Convert a token amount to the ledger's smallest denomination.

    Args:
        tokens: Amount in whole tokens (may be fractional)

    Returns:
        int: Amount in base units (18 decimals)
    """
    return int(Decimal(str(tokens)) * BASE_UNITS_PER_TOKEN)


def from_base_units(base_units: int) -> Decimal:
    """Convert base units back to a token amount."""
    return Decimal(int(base_units)) / BASE_UNITS_PER_TOKEN


def purchase_cost(amount_units: int, price_per_unit: Union[int, float, str, Decimal]) -> int:
    """Cost in base units of buying ``amount_units`` at ``price_per_unit`` tokens."""
    return to_base_units(Decimal(str(price_per_unit)) * int(amount_units))


class SizeAccounting:
    """
    Converts byte counts to the units the ledger and the index understand.

    Attributes:
        bytes_per_unit: Bytes in one allocation unit (1 GiB by default)
        policy: ``ceil_min_one`` registers at least one milli-unit per file and
            rounds any nonzero milli-unit value up to one whole unit on the
            ledger side; ``exact`` keeps fractional accounting.
    """

    def __init__(self, bytes_per_unit: int = DEFAULT_BYTES_PER_UNIT, policy: str = POLICY_CEIL_MIN_ONE):
        if bytes_per_unit <= 0:
            raise ValueError("bytes_per_unit must be positive")
        if policy not in SIZE_POLICIES:
            raise ValueError(f"Unknown size policy {policy!r}, expected one of {SIZE_POLICIES}")
        self.bytes_per_unit = int(bytes_per_unit)
        self.policy = policy

    @classmethod
    def from_config(cls) -> "SizeAccounting":
        return cls(
            bytes_per_unit=get_config_value("accounting", "bytes_per_unit", DEFAULT_BYTES_PER_UNIT),
            policy=get_config_value("accounting", "size_policy", POLICY_CEIL_MIN_ONE),
        )

    def to_units(self, size_bytes: int) -> float:
        """Size as a fractional number of allocation units (index ``file_size``)."""
        return size_bytes / self.bytes_per_unit

    def to_milli_units(self, size_bytes: int) -> int:
        """
        Size submitted to ``store_file``.

        Args:
            size_bytes: Plaintext byte length

        Returns:
            int: ceil(size * 1000 / bytes_per_unit), at least 1 under ``ceil_min_one``
        """
        if size_bytes < 0:
            raise ValueError("size_bytes cannot be negative")
        milli = -(-size_bytes * MILLI_UNITS_PER_UNIT // self.bytes_per_unit)
        if self.policy == POLICY_CEIL_MIN_ONE:
            return max(milli, 1)
        return milli

    def milli_to_allocation_units(self, milli_units: int) -> int:
        """
        Whole allocation units the ledger debits for ``milli_units``.

        Mirrors the contract: integer division by 1000, with a nonzero value
        that divides to 0 rounded up to 1.
        """
        if milli_units <= 0:
            return 0
        if self.policy == POLICY_CEIL_MIN_ONE:
            return max(milli_units // MILLI_UNITS_PER_UNIT, 1)
        return math.ceil(milli_units / MILLI_UNITS_PER_UNIT)

    def fits(self, size_bytes: int, amount_units: Union[int, float]) -> bool:
        """True when ``size_bytes`` is within ``amount_units`` (inclusive)."""
        return size_bytes <= int(Decimal(str(amount_units)) * self.bytes_per_unit)
