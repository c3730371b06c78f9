"""Address string and byte forms."""

from __future__ import annotations

import pytest

from fakechain import ALICE
from tvx.address import (
    DELEGATED,
    SECP256K1,
    actor_id,
    address_from_bytes,
    address_to_bytes,
    id_address,
    is_id_address,
    network_prefix,
    new_address,
)


def test_id_address_bytes() -> None:
    assert address_to_bytes("f01") == b"\x00\x01"
    assert address_to_bytes("f0300") == b"\x00\xac\x02"
    assert address_from_bytes(b"\x00\xac\x02", "t") == "t0300"
    assert actor_id(id_address("f", 1234)) == 1234
    assert is_id_address("t099")
    assert not is_id_address(ALICE)


def test_key_address_round_trip() -> None:
    raw = address_to_bytes(ALICE)
    assert raw[0] == SECP256K1
    assert len(raw) == 21
    assert address_from_bytes(raw) == ALICE
    assert ALICE.startswith("f1")


def test_delegated_address_round_trip() -> None:
    raw = bytes([DELEGATED, 10]) + bytes(range(20))
    addr = address_from_bytes(raw)
    assert addr.startswith("f410f")
    assert address_to_bytes(addr) == raw


def test_checksum_mismatch_rejected() -> None:
    swapped = "a" if ALICE[2] != "a" else "b"
    with pytest.raises(ValueError, match="checksum"):
        address_to_bytes(ALICE[:2] + swapped + ALICE[3:])


@pytest.mark.parametrize("addr", ["", "x01", "f9abc", "f1nobody"])
def test_malformed_addresses_rejected(addr: str) -> None:
    with pytest.raises(ValueError):
        address_to_bytes(addr)


def test_payload_length_enforced() -> None:
    with pytest.raises(ValueError):
        new_address(SECP256K1, b"\x01" * 19)
    with pytest.raises(ValueError):
        network_prefix("f")
