"""State surgery: accessed actors, masked state trees and archive writing."""

from __future__ import annotations

import logging
from typing import BinaryIO, Iterable, List, Set

from .address import is_id_address, network_prefix
from .api import ChainAPI
from .car import write_car_full, write_car_including
from .errors import RetentionError
from .statetree import InitState, StateTree, walk_graph
from .types import Cid, Message, TipSetKey

logger = logging.getLogger(__name__)


class StateSurgeon:
    def __init__(self, api: ChainAPI, store):
        self.api = api
        self.store = store

    async def get_accessed_actors(self, key: TipSetKey, msg: Message) -> List[str]:
        """Actors the message touched, as reported by the chain's own replay.

        `key` is the tipset that included the message. Order is first
        appearance in the trace; sender and receiver always come first.
        """
        logger.info(f"calculating accessed actors during execution of message: {msg.cid}")
        trace = await self.api.state_replay(key, msg.cid)

        accessed = [msg.from_addr, msg.to_addr]
        for call in trace.walk():
            accessed.extend(a for a in (call.from_addr, call.to_addr) if a)
        return _dedupe(accessed)

    def get_masked_state_tree(self, previous_root: Cid, retain: Iterable[str]) -> Cid:
        """Build a state tree holding only the retained actors.

        The init actor's address map is pruned to the retained entries, every
        retained address is resolved to its ID address, and each retained
        actor's full sub-state is materialized in the local store.
        """
        retain = _dedupe(retain)
        if not retain:
            raise RetentionError("empty retain list")

        try:
            tree = StateTree.load(self.store, previous_root)
        except Exception as exc:
            raise RetentionError(f"failed to load state tree {previous_root}: {exc}") from exc

        try:
            prefix = network_prefix(retain[0])
        except ValueError as exc:
            raise RetentionError(f"address not found: {retain[0]}") from exc
        init_state = tree.load_init_state(prefix)
        if init_state is None:
            raise RetentionError("init actor missing from state tree")

        resolved = self._resolve_addresses(retain, init_state)
        init_state.retain(self.store, set(retain) | set(resolved), prefix)
        tree.save_init_state(prefix, init_state)

        masked = StateTree(self.store, version=tree.version)
        for addr in resolved:
            actor = tree.get_actor(addr)
            if actor is None:
                raise RetentionError(f"failed to find actor {addr} in state tree {previous_root}")
            self._materialize(actor.head)
            masked.set_actor(addr, actor)

        root = masked.flush()
        logger.info(f"masked state tree with {len(resolved)} actors: {root}")
        return root

    def _resolve_addresses(self, addrs: List[str], init_state: InitState) -> List[str]:
        resolved = []
        for addr in addrs:
            if is_id_address(addr):
                resolved.append(addr)
                continue
            try:
                id_addr = init_state.resolve(self.store, addr)
            except ValueError:
                id_addr = None
            if id_addr is None:
                raise RetentionError(f"address not found: {addr}")
            resolved.append(id_addr)
        return _dedupe(resolved)

    def _materialize(self, head: Cid) -> None:
        # Reading every block pulls it into the local store.
        for _ in walk_graph(self.store, [head]):
            pass

    def write_car(self, out: BinaryIO, *roots: Cid) -> int:
        return write_car_full(out, self.store, *roots)

    def write_car_including(self, out: BinaryIO, contents: Set[Cid], *roots: Cid) -> int:
        return write_car_including(out, self.store, contents, *roots)


def _dedupe(items: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
