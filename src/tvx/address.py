"""Chain addresses in their string and byte forms.

String form: network prefix (`f` or `t`), protocol digit, then a payload.
ID addresses carry the decimal actor ID. Key and actor addresses carry
base32(payload + checksum), where the checksum is a 4-byte BLAKE2b of the
byte form. Delegated addresses put the decimal namespace and an `f` before
the base32 part.

Byte form: protocol byte, then the uvarint ID, the raw payload, or the
uvarint namespace followed by the sub-address.
"""

from __future__ import annotations

import base64
import hashlib

from .varint import decode_varint, encode_varint

ID = 0
SECP256K1 = 1
ACTOR = 2
BLS = 3
DELEGATED = 4

CHECKSUM_LEN = 4
_PAYLOAD_LEN = {SECP256K1: 20, ACTOR: 20, BLS: 48}


def checksum(raw: bytes) -> bytes:
    return hashlib.blake2b(raw, digest_size=CHECKSUM_LEN).digest()


def _b32encode(data: bytes) -> str:
    return base64.b32encode(data).decode("ascii").lower().rstrip("=")


def _b32decode(text: str) -> bytes:
    body = text.upper()
    return base64.b32decode(body + "=" * (-len(body) % 8))


def network_prefix(addr: str) -> str:
    if len(addr) < 3 or addr[0] not in "ft":
        raise ValueError(f"invalid address: {addr!r}")
    return addr[0]


def protocol_of(addr: str) -> int:
    network_prefix(addr)
    if not addr[1].isdigit() or int(addr[1]) > DELEGATED:
        raise ValueError(f"unknown address protocol: {addr!r}")
    return int(addr[1])


def is_id_address(addr: str) -> bool:
    return len(addr) >= 3 and addr[0] in "ft" and addr[1] == "0" and addr[2:].isdigit()


def id_address(prefix: str, actor_id: int) -> str:
    return f"{prefix}0{actor_id}"


def actor_id(addr: str) -> int:
    if not is_id_address(addr):
        raise ValueError(f"not an ID address: {addr!r}")
    return int(addr[2:])


def address_to_bytes(addr: str) -> bytes:
    protocol = protocol_of(addr)
    body = addr[2:]
    if protocol == ID:
        if not body.isdigit():
            raise ValueError(f"invalid ID address: {addr!r}")
        return bytes([ID]) + encode_varint(int(body))

    if protocol == DELEGATED:
        namespace, sep, encoded = body.partition("f")
        if not sep or not namespace.isdigit():
            raise ValueError(f"invalid delegated address: {addr!r}")
        prefix_bytes = bytes([DELEGATED]) + encode_varint(int(namespace))
    else:
        encoded = body
        prefix_bytes = bytes([protocol])

    try:
        decoded = _b32decode(encoded)
    except ValueError as exc:
        raise ValueError(f"invalid address encoding: {addr!r}") from exc
    if len(decoded) < CHECKSUM_LEN:
        raise ValueError(f"address too short: {addr!r}")
    payload, check = decoded[:-CHECKSUM_LEN], decoded[-CHECKSUM_LEN:]
    raw = prefix_bytes + payload
    if protocol in _PAYLOAD_LEN and len(payload) != _PAYLOAD_LEN[protocol]:
        raise ValueError(f"invalid payload length for {addr!r}")
    if checksum(raw) != check:
        raise ValueError(f"address checksum mismatch: {addr!r}")
    return raw


def address_from_bytes(raw: bytes, prefix: str = "f") -> str:
    raw = bytes(raw)
    if not raw:
        raise ValueError("empty address")
    protocol = raw[0]
    if protocol == ID:
        value, end = decode_varint(raw, 1)
        if end != len(raw):
            raise ValueError("trailing bytes after ID address")
        return id_address(prefix, value)
    if protocol == DELEGATED:
        namespace, offset = decode_varint(raw, 1)
        return f"{prefix}{DELEGATED}{namespace}f{_b32encode(raw[offset:] + checksum(raw))}"
    if protocol not in _PAYLOAD_LEN:
        raise ValueError(f"unknown address protocol: {protocol}")
    if len(raw) - 1 != _PAYLOAD_LEN[protocol]:
        raise ValueError(f"invalid payload length for protocol {protocol}")
    return f"{prefix}{protocol}{_b32encode(raw[1:] + checksum(raw))}"


def new_address(protocol: int, payload: bytes, prefix: str = "f") -> str:
    """Address for a key or actor payload (20 or 48 bytes)."""
    return address_from_bytes(bytes([protocol]) + payload, prefix)
