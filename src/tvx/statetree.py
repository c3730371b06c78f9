"""State tree layout over a block store.

The state root is `[version, actors, info]`. `actors` is a HAMT keyed by the
byte form of ID addresses; each value is the actor tuple
`[code, head, nonce, balance]`, plus the delegated address from version 5 on.

The init actor's head is `[address_map, next_id, network_name]`, where
`address_map` is a HAMT from robust address bytes to actor IDs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .address import (
    actor_id,
    address_from_bytes,
    address_to_bytes,
    id_address,
    is_id_address,
    network_prefix,
)
from .config import (
    BURNT_FUNDS_ACTOR_ID,
    INIT_ACTOR_ID,
    REWARD_ACTOR_ID,
    STATE_TREE_VERSION,
    SUPPORTED_STATE_TREE_VERSIONS,
    protocol_address,
)
from .encoding import (
    block_links,
    decode_bigint,
    decode_node,
    encode_bigint,
    encode_node,
    link,
    parse_link,
)
from .hamt import Hamt
from .types import Cid


def init_address(prefix: str) -> str:
    return protocol_address(prefix, INIT_ACTOR_ID)


def protocol_actors(prefix: str) -> List[str]:
    """Actors every message execution touches implicitly."""
    return [
        protocol_address(prefix, REWARD_ACTOR_ID),
        protocol_address(prefix, BURNT_FUNDS_ACTOR_ID),
        protocol_address(prefix, INIT_ACTOR_ID),
    ]


@dataclass
class Actor:
    code: Cid
    head: Cid
    nonce: int = 0
    balance: int = 0
    # Delegated address, only present in version 5 trees.
    address: Optional[str] = None

    def to_node(self, version: int) -> list:
        node = [link(self.code), link(self.head), self.nonce, encode_bigint(self.balance)]
        if version >= 5:
            node.append(address_to_bytes(self.address) if self.address else None)
        return node

    @classmethod
    def from_node(cls, node: list, prefix: str = "f") -> "Actor":
        address = None
        if len(node) > 4 and node[4] is not None:
            address = address_from_bytes(node[4], prefix)
        return cls(
            code=parse_link(node[0]),
            head=parse_link(node[1]),
            nonce=node[2],
            balance=decode_bigint(node[3]),
            address=address,
        )


@dataclass
class InitState:
    address_map: Cid
    next_id: int = 0
    network_name: str = ""

    @classmethod
    def create(cls, store, address_map: Dict[str, str], next_id: int, network_name: str) -> "InitState":
        hamt = Hamt(store)
        for robust, id_addr in address_map.items():
            hamt.set(address_to_bytes(robust), actor_id(id_addr))
        return cls(hamt.flush(), next_id, network_name)

    def resolve(self, store, addr: str) -> Optional[str]:
        if is_id_address(addr):
            return addr
        value = Hamt(store, self.address_map).find(address_to_bytes(addr))
        if value is None:
            return None
        return id_address(network_prefix(addr), value)

    def entries(self, store, prefix: str = "f") -> Iterator[Tuple[str, str]]:
        """(robust address, ID address) pairs in trie order."""
        for key, value in Hamt(store, self.address_map).items():
            yield address_from_bytes(key, prefix), id_address(prefix, value)

    def retain(self, store, keep: Set[str], prefix: str = "f") -> None:
        """Drop every entry whose robust address and ID are both outside `keep`."""
        pruned = Hamt(store)
        for robust, id_addr in self.entries(store, prefix):
            if robust in keep or id_addr in keep:
                pruned.set(address_to_bytes(robust), actor_id(id_addr))
        self.address_map = pruned.flush()

    def to_node(self) -> list:
        return [link(self.address_map), self.next_id, self.network_name]

    @classmethod
    def from_node(cls, node: list) -> "InitState":
        return cls(address_map=parse_link(node[0]), next_id=node[1], network_name=node[2])


class StateTree:
    def __init__(
        self,
        store,
        version: int = STATE_TREE_VERSION,
        actors: Optional[Cid] = None,
        info: Optional[Cid] = None,
    ):
        if version not in SUPPORTED_STATE_TREE_VERSIONS:
            raise ValueError(f"unsupported state tree version: {version!r}")
        self.store = store
        self.version = version
        self._actors = Hamt(store, actors)
        self._info = info
        # Actors handed out by get_actor; mutations land on flush.
        self._cache: Dict[bytes, Actor] = {}

    @classmethod
    def load(cls, store, root: Cid) -> "StateTree":
        node = decode_node(store.get(root))
        if not isinstance(node, list) or len(node) != 3:
            raise ValueError(f"state root {root} is not a versioned state root")
        version, actors, info = node
        return cls(store, version, parse_link(actors), parse_link(info))

    def get_actor(self, addr: str) -> Optional[Actor]:
        key = address_to_bytes(addr)
        if key in self._cache:
            return self._cache[key]
        node = self._actors.find(key)
        if node is None:
            return None
        actor = self._cache[key] = Actor.from_node(node, network_prefix(addr))
        return actor

    def set_actor(self, addr: str, actor: Actor) -> None:
        if not is_id_address(addr):
            raise ValueError(f"actors are keyed by ID address, got {addr!r}")
        self._cache[address_to_bytes(addr)] = actor

    def actor_addresses(self, prefix: str = "f") -> List[str]:
        keys = {k for k, _ in self._actors.items()} | set(self._cache)
        return sorted(address_from_bytes(k, prefix) for k in keys)

    def lookup_id(self, addr: str) -> Optional[str]:
        if is_id_address(addr):
            return addr
        init = self.load_init_state(network_prefix(addr))
        return init.resolve(self.store, addr) if init else None

    def load_init_state(self, prefix: str) -> Optional[InitState]:
        actor = self.get_actor(init_address(prefix))
        if actor is None:
            return None
        return InitState.from_node(self.get_head(actor))

    def save_init_state(self, prefix: str, state: InitState) -> None:
        addr = init_address(prefix)
        actor = self.get_actor(addr)
        if actor is None:
            raise KeyError(f"init actor not found: {addr}")
        actor.head = self.put_head(state.to_node())

    def get_head(self, actor: Actor):
        return decode_node(self.store.get(actor.head))

    def put_head(self, node) -> Cid:
        return self.store.put(encode_node(node))

    def flush(self) -> Cid:
        for key, actor in self._cache.items():
            self._actors.set(key, actor.to_node(self.version))
        if self._info is None:
            self._info = self.store.put(encode_node([]))
        return self.store.put(encode_node([self.version, link(self._actors.flush()), link(self._info)]))


def walk_graph(store, roots, include: Optional[Set[Cid]] = None) -> Iterator[tuple[Cid, bytes]]:
    """Depth-first walk from `roots`, yielding each block once.

    With `include`, only links whose CID is in the set are followed; roots are
    always yielded.
    """
    seen: Set[Cid] = set()
    for root in roots:
        stack = [root]
        while stack:
            cid = stack.pop()
            if cid in seen:
                continue
            seen.add(cid)
            data = store.get(cid)
            yield cid, data
            children = [
                c for c in block_links(cid, data)
                if c not in seen and (include is None or c in include)
            ]
            stack.extend(reversed(children))
