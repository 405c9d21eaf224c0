"""
Tests for utility functions.
"""

import pytest

from conftest import fake_cid
from depin_storage.utils import (
    accounts_match,
    format_size,
    format_storage_size,
    is_valid_cid,
    is_zero_account,
    normalize_account,
    provider_id_for_address,
)

ALICE_SS58 = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
ALICE_HEX = "d43593c715fdd31c61141abd04a99fd6822c8558854ccde39a5684e7a56da27d"


def test_normalize_ss58_and_hex():
    assert normalize_account(ALICE_SS58) == ALICE_HEX
    assert normalize_account("0x" + ALICE_HEX.upper()) == ALICE_HEX
    assert normalize_account(None) == ""


def test_accounts_match_across_encodings():
    assert accounts_match(ALICE_SS58, "0x" + ALICE_HEX.upper())
    assert not accounts_match(ALICE_SS58, "0x" + "00" * 32)
    assert not accounts_match("", "")


def test_zero_account():
    assert is_zero_account("0x" + "00" * 32)
    assert is_zero_account(None)
    assert not is_zero_account(ALICE_SS58)


def test_provider_id_is_stable_and_short():
    provider_id = provider_id_for_address(ALICE_SS58)

    assert len(provider_id) == 8
    assert provider_id == provider_id_for_address("0x" + ALICE_HEX)
    assert provider_id != provider_id_for_address("0x" + "00" * 32)


def test_is_valid_cid():
    assert is_valid_cid(fake_cid(b"hello"))
    assert is_valid_cid("bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi")
    assert not is_valid_cid("Qm0notbase58")
    assert not is_valid_cid("")
    assert not is_valid_cid("QmOrphan")
    assert not is_valid_cid("bafy../../escaped")
    assert not is_valid_cid("BAFYBEIGDYRZT5SFP7UDM7HU76UH7Y26NF3EFUYLQABF3OCLGTQY55FBZDI")


@pytest.mark.parametrize(
    "size, expected",
    [
        (512, "512 bytes"),
        (2048, "2.00 KB"),
        (3 * 1024 * 1024, "3.00 MB"),
        (5 * 1024 * 1024 * 1024, "5.00 GB"),
    ],
)
def test_format_size(size, expected):
    assert format_size(size) == expected


def test_format_storage_size():
    assert format_storage_size(0.5) == "512.00MB"
    assert format_storage_size(1.5) == "1.50GB"
