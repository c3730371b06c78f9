"""Hash array mapped trie in the chain's on-disk layout.

A node is `[bitfield, pointers]`. The bitfield is a big-endian integer whose
bit `i` is set when slot `i` is occupied; `pointers` holds one entry per set
bit in slot order. A pointer is either a link to a child node or a bucket of
up to BUCKET_SIZE `[key, value]` pairs sorted by key. Slots are chosen by
consuming `bit_width` bits of sha256(key) per level, most significant first.

Buckets overflow into a child node holding their entries one level down, so
the layout depends only on the keys present, never on insertion order.
"""

from __future__ import annotations

import hashlib
from typing import Any, Iterator, List, Optional, Tuple, Union

from .encoding import decode_node, encode_node, is_link, link, parse_link
from .types import Cid

DEFAULT_BIT_WIDTH = 5
BUCKET_SIZE = 3

Bucket = List[Tuple[bytes, Any]]


class _Node:
    __slots__ = ("bitfield", "pointers")

    def __init__(self, bitfield: int = 0, pointers: Optional[list] = None):
        self.bitfield = bitfield
        # Each pointer is a Cid (child not loaded), a _Node, or a Bucket.
        self.pointers: List[Union[Cid, "_Node", Bucket]] = pointers if pointers is not None else []

    def position(self, index: int) -> int:
        return bin(self.bitfield & ((1 << index) - 1)).count("1")

    def occupied(self, index: int) -> bool:
        return bool(self.bitfield >> index & 1)


def _slot(digest: bytes, depth: int, bit_width: int) -> int:
    start = depth * bit_width
    total = len(digest) * 8
    if start + bit_width > total:
        raise ValueError("hamt depth exceeds hash length")
    return int.from_bytes(digest, "big") >> (total - start - bit_width) & ((1 << bit_width) - 1)


def _hash(key: bytes) -> bytes:
    return hashlib.sha256(key).digest()


class Hamt:
    """Map of byte keys to IPLD values stored in a block store."""

    def __init__(self, store, root: Optional[Cid] = None, bit_width: int = DEFAULT_BIT_WIDTH):
        self.store = store
        self.bit_width = bit_width
        self._root = self._load(root) if root else _Node()

    def _load(self, cid: Cid) -> _Node:
        node = decode_node(self.store.get(cid))
        if not isinstance(node, list) or len(node) != 2:
            raise ValueError(f"malformed hamt node {cid}")
        bitfield = int.from_bytes(bytes(node[0]), "big")
        pointers: list = []
        for p in node[1]:
            if is_link(p):
                pointers.append(parse_link(p))
            else:
                pointers.append([(bytes(k), v) for k, v in p])
        if bin(bitfield).count("1") != len(pointers):
            raise ValueError(f"hamt node {cid} bitfield does not match its pointers")
        return _Node(bitfield, pointers)

    def _child(self, node: _Node, pos: int) -> Union[_Node, Bucket]:
        p = node.pointers[pos]
        if isinstance(p, str):
            p = node.pointers[pos] = self._load(Cid(p))
        return p

    def find(self, key: bytes) -> Optional[Any]:
        digest = _hash(key)
        node = self._root
        depth = 0
        while True:
            index = _slot(digest, depth, self.bit_width)
            if not node.occupied(index):
                return None
            p = self._child(node, node.position(index))
            if isinstance(p, _Node):
                node = p
                depth += 1
                continue
            for k, v in p:
                if k == key:
                    return v
            return None

    def set(self, key: bytes, value: Any) -> None:
        self._insert(self._root, _hash(key), 0, key, value)

    def _insert(self, node: _Node, digest: bytes, depth: int, key: bytes, value: Any) -> None:
        index = _slot(digest, depth, self.bit_width)
        pos = node.position(index)
        if not node.occupied(index):
            node.bitfield |= 1 << index
            node.pointers.insert(pos, [(key, value)])
            return

        p = self._child(node, pos)
        if isinstance(p, _Node):
            self._insert(p, digest, depth + 1, key, value)
            return

        for i, (k, _) in enumerate(p):
            if k == key:
                p[i] = (key, value)
                return
        if len(p) < BUCKET_SIZE:
            p.append((key, value))
            p.sort(key=lambda kv: kv[0])
            return

        child = _Node()
        for k, v in p + [(key, value)]:
            self._insert(child, _hash(k), depth + 1, k, v)
        node.pointers[pos] = child

    def items(self) -> Iterator[Tuple[bytes, Any]]:
        yield from self._items(self._root)

    def _items(self, node: _Node) -> Iterator[Tuple[bytes, Any]]:
        for pos in range(len(node.pointers)):
            p = self._child(node, pos)
            if isinstance(p, _Node):
                yield from self._items(p)
            else:
                yield from p

    def flush(self) -> Cid:
        return self._flush(self._root)

    def _flush(self, node: _Node) -> Cid:
        pointers = []
        for p in node.pointers:
            if isinstance(p, _Node):
                cid = self._flush(p)
                pointers.append(link(cid))
            elif isinstance(p, str):
                pointers.append(link(Cid(p)))
            else:
                pointers.append([[k, v] for k, v in p])
        bitfield = node.bitfield.to_bytes((node.bitfield.bit_length() + 7) // 8, "big")
        return self.store.put(encode_node([bitfield, pointers]))
