"""CARv1-framed archives of store blocks.

Layout: varint(len(header)) header, then for every block
varint(len(cid) + len(data)) cid data, with binary CIDs. The header is the
dag-cbor node `{"roots": [...], "version": 1}`.
"""

from __future__ import annotations

import gzip
import io
from typing import BinaryIO, Iterable, List, Optional, Set, Tuple

from .config import CAR_VERSION
from .encoding import (
    cid_to_bytes,
    decode_node,
    decode_varint,
    encode_node,
    encode_varint,
    link,
    parse_link,
    read_cid,
)
from .statetree import walk_graph
from .store import MemoryBlockstore
from .types import Cid


def write_car(out: BinaryIO, roots: List[Cid], blocks: Iterable[Tuple[Cid, bytes]]) -> int:
    """Write header and blocks; returns the number of blocks written."""
    header = encode_node({"roots": [link(r) for r in roots], "version": CAR_VERSION})
    out.write(encode_varint(len(header)))
    out.write(header)

    count = 0
    for cid, data in blocks:
        raw = cid_to_bytes(cid)
        out.write(encode_varint(len(raw) + len(data)))
        out.write(raw)
        out.write(data)
        count += 1
    return count


def write_car_full(out: BinaryIO, store, *roots: Cid) -> int:
    """Archive the full graph reachable from `roots`."""
    return write_car(out, list(roots), walk_graph(store, roots))


def write_car_including(out: BinaryIO, store, contents: Set[Cid], *roots: Cid) -> int:
    """Archive `roots` plus whatever in `contents` is reachable through `contents`."""
    return write_car(out, list(roots), walk_graph(store, roots, include=contents))


def read_car(data: bytes) -> Tuple[List[Cid], List[Tuple[Cid, bytes]]]:
    header_len, offset = decode_varint(data, 0)
    header = decode_node(data[offset:offset + header_len])
    offset += header_len
    if not isinstance(header, dict):
        raise ValueError("CAR header is not a map")
    if header.get("version") != CAR_VERSION:
        raise ValueError(f"unsupported CAR version: {header.get('version')!r}")
    roots = [parse_link(r) for r in header.get("roots", [])]

    blocks: List[Tuple[Cid, bytes]] = []
    while offset < len(data):
        section_len, offset = decode_varint(data, offset)
        end = offset + section_len
        if end > len(data):
            raise ValueError("truncated CAR section")
        cid, data_start = read_cid(data, offset)
        blocks.append((cid, data[data_start:end]))
        offset = end
    return roots, blocks


def load_car(data: bytes, store: Optional[MemoryBlockstore] = None) -> Tuple[List[Cid], MemoryBlockstore]:
    """Load an archive into a store, returning its roots and the store."""
    store = store if store is not None else MemoryBlockstore()
    roots, blocks = read_car(data)
    for cid, block in blocks:
        store.put_raw(cid, block)
    return roots, store


def compress(data: bytes) -> bytes:
    # mtime pinned so identical archives compress to identical bytes.
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        gz.write(data)
    return buf.getvalue()


def decompress(data: bytes) -> bytes:
    return gzip.decompress(data)
