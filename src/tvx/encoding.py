"""Block encoding, CIDs and message serialization.

Blocks are dag-cbor, the chain's own IPLD codec. Locally written blocks get
CIDv1 with the dag-cbor codec and a BLAKE2b-256 multihash, matching the
identifiers the node computes for the same bytes. Links are extracted per the
codec named in a block's CID:

- dag-cbor: every CID embedded in the decoded node, in encounter order.
- raw: opaque bytes, no links.
- fil-commitment-sealed / fil-commitment-unsealed: sector commitments name
  data that is never stored as a block, so links to them are not followed.

Any other codec is rejected.
"""

from __future__ import annotations

from typing import Any, Iterator, List

import dag_cbor
from multiformats import CID, multihash

from .address import address_from_bytes, address_to_bytes
from .errors import RetentionError
from .types import Cid, Message
from .varint import decode_varint, encode_varint

CID_VERSION = 1
DAG_CBOR = 0x71
RAW = 0x55
FIL_COMMITMENT_UNSEALED = 0xF101
FIL_COMMITMENT_SEALED = 0xF102
IDENTITY = 0x00

DEFAULT_HASH = "blake2b-256"

_OPAQUE_CODECS = (RAW,)
_UNFOLLOWED_CODECS = (FIL_COMMITMENT_UNSEALED, FIL_COMMITMENT_SEALED)


# --- CIDs ---


def cid_to_bytes(cid: Cid) -> bytes:
    return bytes(CID.decode(cid))


def cid_from_bytes(raw: bytes) -> Cid:
    return Cid(str(CID.decode(raw)))


def read_cid(buf: bytes, offset: int) -> tuple[Cid, int]:
    """Read a binary CIDv1 starting at `offset`."""
    start = offset
    version, offset = decode_varint(buf, offset)
    if version != CID_VERSION:
        raise ValueError(f"unsupported CID version: {version}")
    _codec, offset = decode_varint(buf, offset)
    _mh_code, offset = decode_varint(buf, offset)
    mh_len, offset = decode_varint(buf, offset)
    end = offset + mh_len
    if end > len(buf):
        raise ValueError("truncated CID digest")
    return cid_from_bytes(buf[start:end]), end


def compute_cid(data: bytes, codec: str = "dag-cbor", hashfun: str = DEFAULT_HASH) -> Cid:
    if hashfun == "identity":
        # The data is the digest; nothing is hashed.
        digest = encode_varint(IDENTITY) + encode_varint(len(data)) + data
    else:
        digest = multihash.digest(data, hashfun)
    return Cid(str(CID("base32", CID_VERSION, codec, digest)))


def codec_of(cid: Cid) -> int:
    return CID.decode(cid).codec.code


def inline_data(cid: Cid):
    """Data carried inside an identity-hashed CID, or None for hashed CIDs."""
    parsed = CID.decode(cid)
    if parsed.hashfun.code != IDENTITY:
        return None
    return bytes(parsed.raw_digest)


# --- nodes ---


def link(cid: Cid) -> CID:
    return CID.decode(cid)


def parse_link(value: Any) -> Cid:
    if not isinstance(value, CID):
        raise ValueError(f"not a link: {value!r}")
    return Cid(str(value))


def is_link(value: Any) -> bool:
    return isinstance(value, CID)


def encode_node(obj: Any) -> bytes:
    return dag_cbor.encode(obj)


def decode_node(data: bytes) -> Any:
    return dag_cbor.decode(data)


def iter_links(obj: Any) -> Iterator[Cid]:
    """Yield linked CIDs in encounter order (dag-cbor map keys are sorted)."""
    if isinstance(obj, CID):
        yield Cid(str(obj))
    elif isinstance(obj, dict):
        for value in obj.values():
            yield from iter_links(value)
    elif isinstance(obj, list):
        for item in obj:
            yield from iter_links(item)


def block_links(cid: Cid, data: bytes) -> List[Cid]:
    """Links to follow out of the block `cid` holding `data`."""
    code = codec_of(cid)
    if code in _OPAQUE_CODECS or code in _UNFOLLOWED_CODECS:
        return []
    if code != DAG_CBOR:
        raise RetentionError(f"unsupported block codec 0x{code:x} for {cid}")
    try:
        node = decode_node(data)
    except Exception as exc:
        raise RetentionError(f"malformed dag-cbor block {cid}: {exc}") from exc
    return [c for c in iter_links(node) if codec_of(c) not in _UNFOLLOWED_CODECS]


# --- big integers ---


def encode_bigint(value: int) -> bytes:
    """Chain big-int bytes: empty for zero, else a sign byte and the magnitude."""
    if value == 0:
        return b""
    sign = b"\x01" if value < 0 else b"\x00"
    magnitude = abs(value)
    return sign + magnitude.to_bytes((magnitude.bit_length() + 7) // 8, "big")


def decode_bigint(data: bytes) -> int:
    if not data:
        return 0
    if data[0] not in (0, 1):
        raise ValueError(f"invalid big int sign byte: {data[0]:#x}")
    magnitude = int.from_bytes(data[1:], "big")
    return -magnitude if data[0] == 1 else magnitude


# --- messages ---


def message_to_node(msg: Message) -> list:
    return [
        msg.version,
        address_to_bytes(msg.to_addr),
        address_to_bytes(msg.from_addr),
        msg.nonce,
        encode_bigint(msg.value),
        msg.gas_limit,
        encode_bigint(msg.gas_fee_cap),
        encode_bigint(msg.gas_premium),
        msg.method,
        msg.params,
    ]


def serialize_message(msg: Message) -> bytes:
    """Unsigned message in its on-chain form; its CID is `compute_cid` of this."""
    return encode_node(message_to_node(msg))


def deserialize_message(data: bytes, prefix: str = "f") -> Message:
    node = decode_node(data)
    if not isinstance(node, list) or len(node) != 10:
        raise ValueError("message must be a 10-element tuple")
    version, to_raw, from_raw, nonce, value, gas_limit, fee_cap, premium, method, params = node
    return Message(
        cid=compute_cid(data),
        from_addr=address_from_bytes(from_raw, prefix),
        to_addr=address_from_bytes(to_raw, prefix),
        nonce=nonce,
        value=decode_bigint(value),
        method=method,
        params=bytes(params),
        version=version,
        gas_limit=gas_limit,
        gas_fee_cap=decode_bigint(fee_cap),
        gas_premium=decode_bigint(premium),
    )
