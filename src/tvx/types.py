"""Core chain types used by the extraction pipeline.

Only the fields the pipeline actually reads are modelled; anything else the
node returns is dropped at the API boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NewType, Optional, Tuple

# Content identifier in its string form (multibase base32, `b...`).
Cid = NewType("Cid", str)


@dataclass(frozen=True)
class Message:
    cid: Cid
    from_addr: str
    to_addr: str
    nonce: int
    value: int = 0
    method: int = 0
    params: bytes = b""
    version: int = 0
    gas_limit: int = 0
    gas_fee_cap: int = 0
    gas_premium: int = 0


@dataclass(frozen=True)
class CanonicalMessage:
    cid: Cid
    message: Message


@dataclass(frozen=True)
class TipSetKey:
    cids: Tuple[Cid, ...] = ()

    def __str__(self) -> str:
        return "{" + ",".join(self.cids) + "}"

    def is_empty(self) -> bool:
        return not self.cids


EMPTY_TSK = TipSetKey()


@dataclass(frozen=True)
class BlockHeader:
    cid: Cid
    height: int
    parents: TipSetKey
    parent_state_root: Cid
    parent_base_fee: int
    miner: str = ""


@dataclass(frozen=True)
class TipSet:
    key: TipSetKey
    height: int
    blocks: Tuple[BlockHeader, ...]

    @property
    def parents(self) -> TipSetKey:
        return self.blocks[0].parents

    @property
    def parent_state(self) -> Cid:
        return self.blocks[0].parent_state_root

    @property
    def parent_base_fee(self) -> int:
        return self.blocks[0].parent_base_fee


@dataclass(frozen=True)
class MessageReceipt:
    exit_code: int
    return_value: bytes
    gas_used: int


@dataclass(frozen=True)
class MsgLookup:
    message: Cid
    tipset: TipSetKey
    height: int
    receipt: MessageReceipt


@dataclass
class ApplyResult:
    """Outcome of executing one message with the local engine."""
    receipt: MessageReceipt
    actor_error: Optional[str] = None


@dataclass
class ExecutionTrace:
    from_addr: str
    to_addr: str
    subcalls: List["ExecutionTrace"] = field(default_factory=list)

    def walk(self):
        yield self
        for sub in self.subcalls:
            yield from sub.walk()
