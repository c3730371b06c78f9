"""In-memory chain serving the ChainAPI calls the extractor makes.

The chain has two tipsets of interest: the inclusion tipset at INC_HEIGHT
(one block carrying every message) and the execution tipset right after it.
Authoritative receipts are produced by running the toy engine over the
messages in canonical order against the full genesis state.
"""

from __future__ import annotations

import hashlib
from dataclasses import replace
from typing import Dict, List, Optional

from fakevm import METHOD_FORWARD, METHOD_READ_HEAD, METHOD_SEND, ToyEngine
from tvx.address import SECP256K1, new_address
from tvx.encoding import compute_cid, encode_node, link, serialize_message
from tvx.engine import ExecuteParams
from tvx.statetree import Actor, InitState, StateTree
from tvx.store import MemoryBlockstore
from tvx.types import (
    EMPTY_TSK,
    BlockHeader,
    CanonicalMessage,
    Cid,
    ExecutionTrace,
    Message,
    MessageReceipt,
    MsgLookup,
    TipSet,
    TipSetKey,
)


def _key_address(name: str) -> str:
    return new_address(SECP256K1, hashlib.blake2b(name.encode(), digest_size=20).digest())


ALICE = _key_address("alice")
BOB = _key_address("bob")
CAROL = _key_address("carol")
DAVE = _key_address("dave")
# Well-formed, but known to no state tree.
NOBODY = _key_address("nobody")

ALICE_ID = "f0100"
BOB_ID = "f0101"
CAROL_ID = "f0102"
DAVE_ID = "f0103"

INC_HEIGHT = 10
EXEC_HEIGHT = 11
BASE_FEE = 3
CIRC_SUPPLY = 1_000_000_000
NETWORK = "mainnet"
NODE_VERSION = "1.23.0+mainnet"


def code_cid(name: str) -> Cid:
    """Builtin actor code CID; the name is inlined with an identity hash."""
    return compute_cid(f"fil/9/{name}".encode(), codec="raw", hashfun="identity")


def make_message(
    from_addr: str,
    to_addr: str,
    nonce: int,
    method: int = METHOD_SEND,
    value: int = 0,
    params: bytes = b"",
) -> Message:
    msg = Message(
        cid=Cid(""),
        from_addr=from_addr,
        to_addr=to_addr,
        nonce=nonce,
        value=value,
        method=method,
        params=params,
        gas_limit=10_000,
        gas_fee_cap=10,
        gas_premium=1,
    )
    return replace(msg, cid=compute_cid(serialize_message(msg)))


def build_genesis(store) -> Cid:
    def put(node) -> Cid:
        return store.put(encode_node(node))

    tree = StateTree(store)
    empty = put([])
    init_state = InitState.create(
        store,
        {ALICE: ALICE_ID, BOB: BOB_ID, CAROL: CAROL_ID, DAVE: DAVE_ID},
        next_id=104,
        network_name=NETWORK,
    )
    tree.set_actor("f00", Actor(code_cid("system"), empty))
    tree.set_actor("f01", Actor(code_cid("init"), put(init_state.to_node())))
    tree.set_actor("f02", Actor(code_cid("reward"), put({"total_paid": 0}), balance=5_000_000))
    tree.set_actor("f099", Actor(code_cid("account"), empty))

    blob = put({"blob": "x" * 64})
    account = code_cid("account")
    tree.set_actor(ALICE_ID, Actor(account, put({"address": ALICE}), balance=10_000_000))
    tree.set_actor(BOB_ID, Actor(code_cid("multisig"), put({"address": BOB, "data": link(blob)}), balance=1_000))
    tree.set_actor(CAROL_ID, Actor(account, put({"address": CAROL}), balance=500))
    tree.set_actor(DAVE_ID, Actor(code_cid("miner"), put({"address": DAVE, "sectors": [link(blob)]}), balance=0))
    return tree.flush()


def default_messages() -> List[Message]:
    """Canonical order of the inclusion tipset; the last one is the usual target."""
    return [
        make_message(ALICE, BOB_ID, 0, value=10),
        make_message(ALICE, CAROL_ID, 1, value=20),
        make_message(BOB, CAROL_ID, 0, value=5),
        make_message(ALICE, BOB_ID, 2, method=METHOD_READ_HEAD, value=1),
        make_message(CAROL, ALICE_ID, 0, value=1),
    ]


class FakeChain:
    def __init__(self, messages: Optional[List[Message]] = None):
        self.store = MemoryBlockstore()
        self.genesis = build_genesis(self.store)
        self.messages = messages if messages is not None else default_messages()
        self.calls: List[tuple] = []

        self.parent_block = self._block("blk-8", 8, EMPTY_TSK, self.genesis)
        self.prev_ts = self._tipset(self.parent_block)

        self.inc_block = self._block("blk-inc", INC_HEIGHT, self.prev_ts.key, self.genesis)
        self.inc_ts = self._tipset(self.inc_block)

        # Execute all messages to derive the execution tipset's state root.
        engine = ToyEngine()
        root = self.genesis
        self.receipts: Dict[Cid, Optional[MessageReceipt]] = {}
        for msg in self.messages:
            result, root = engine.execute(self.store, ExecuteParams(
                preroot=root,
                epoch=EXEC_HEIGHT,
                message=msg,
                circ_supply=CIRC_SUPPLY,
                base_fee=BASE_FEE,
            ))
            self.receipts[msg.cid] = result.receipt
        self.exec_state = root

        self.exec_block = self._block("blk-exec", EXEC_HEIGHT, self.inc_ts.key, root)
        self.exec_ts = self._tipset(self.exec_block)
        self.head_block = self._block("blk-head", EXEC_HEIGHT + 1, self.exec_ts.key, root)
        self.head_ts = self._tipset(self.head_block)

        self.tipsets = {ts.key: ts for ts in (self.prev_ts, self.inc_ts, self.exec_ts, self.head_ts)}
        self.blocks = {b.cid: b for b in (self.parent_block, self.inc_block, self.exec_block, self.head_block)}
        self.traces: Dict[Cid, ExecutionTrace] = {
            m.cid: default_trace(m) for m in self.messages
        }

    @staticmethod
    def _block(name: str, height: int, parents: TipSetKey, state_root: Cid) -> BlockHeader:
        return BlockHeader(
            cid=compute_cid(name.encode()),
            height=height,
            parents=parents,
            parent_state_root=state_root,
            parent_base_fee=BASE_FEE,
            miner="f01000",
        )

    @staticmethod
    def _tipset(block: BlockHeader) -> TipSet:
        return TipSet(key=TipSetKey((block.cid,)), height=block.height, blocks=(block,))

    def _record(self, *call) -> None:
        self.calls.append(call)

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    # --- ChainAPI ---

    async def chain_get_message(self, cid: Cid) -> Message:
        self._record("chain_get_message", cid)
        for msg in self.messages:
            if msg.cid == cid:
                return msg
        raise KeyError(f"message not found: {cid}")

    async def state_search_msg(self, cid: Cid) -> Optional[MsgLookup]:
        self._record("state_search_msg", cid)
        if cid not in self.receipts:
            return None
        return MsgLookup(
            message=cid,
            tipset=self.exec_ts.key,
            height=self.exec_ts.height,
            receipt=self.receipts[cid] or MessageReceipt(0, b"", 0),
        )

    async def chain_get_tipset(self, key: TipSetKey) -> TipSet:
        self._record("chain_get_tipset", key)
        return self.tipsets[key]

    async def chain_get_tipset_by_height(self, height: int, key: TipSetKey) -> TipSet:
        self._record("chain_get_tipset_by_height", height, key)
        ts = self.head_ts if key.is_empty() else self.tipsets[key]
        if height > ts.height:
            raise ValueError(f"looking for tipset with height greater than start point: {height}")
        while ts.height > height:
            ts = self.tipsets[ts.parents]
        return ts

    async def chain_get_block(self, cid: Cid) -> BlockHeader:
        self._record("chain_get_block", cid)
        return self.blocks[cid]

    async def chain_get_parent_messages(self, block: Cid) -> List[CanonicalMessage]:
        self._record("chain_get_parent_messages", block)
        if block != self.exec_block.cid:
            return []
        return [CanonicalMessage(m.cid, m) for m in self.messages]

    async def state_circulating_supply(self, key: TipSetKey) -> int:
        self._record("state_circulating_supply", key)
        return CIRC_SUPPLY

    async def state_get_receipt(self, cid: Cid, key: TipSetKey) -> Optional[MessageReceipt]:
        self._record("state_get_receipt", cid, key)
        return self.receipts.get(cid)

    async def state_network_name(self) -> str:
        return NETWORK

    async def version(self) -> str:
        return NODE_VERSION

    async def chain_read_obj(self, cid: Cid) -> Optional[bytes]:
        self._record("chain_read_obj", cid)
        return self.store.get(cid) if self.store.has(cid) else None

    async def state_replay(self, key: TipSetKey, cid: Cid) -> ExecutionTrace:
        self._record("state_replay", key, cid)
        if key != self.inc_ts.key:
            raise ValueError(f"message {cid} was not included in tipset {key}")
        return self.traces[cid]


def default_trace(msg: Message) -> ExecutionTrace:
    trace = ExecutionTrace(msg.from_addr, msg.to_addr)
    if msg.method == METHOD_FORWARD:
        trace.subcalls.append(ExecutionTrace(msg.to_addr, msg.params.decode()))
    return trace
