"""Block stores backing state-tree access during extraction.

MemoryBlockstore holds blocks locally. TracingBlockstore additionally records
every CID read while tracing is on. ProxyingBlockstore falls back to the chain
(`ChainReadObj`) for blocks it does not hold and caches what it fetched.

A store instance belongs to exactly one extraction run. Tracing is a single
flag plus an accumulator and is not safe for concurrent use.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Iterator, Optional, Set

from .encoding import compute_cid, inline_data
from .types import Cid

if TYPE_CHECKING:
    from .api import ChainAPI

logger = logging.getLogger(__name__)


class BlockNotFound(KeyError):
    def __init__(self, cid: Cid):
        super().__init__(cid)
        self.cid = cid

    def __str__(self) -> str:
        return f"block not found: {self.cid}"


class MemoryBlockstore:
    def __init__(self) -> None:
        self._blocks: Dict[Cid, bytes] = {}

    def get(self, cid: Cid) -> bytes:
        try:
            return self._blocks[cid]
        except KeyError:
            pass
        # Identity-hashed CIDs carry their block inline.
        data = inline_data(cid)
        if data is None:
            raise BlockNotFound(cid)
        return data

    def put(self, data: bytes) -> Cid:
        cid = compute_cid(data)
        self._blocks[cid] = data
        return cid

    def put_raw(self, cid: Cid, data: bytes) -> None:
        """Store a block under a CID computed elsewhere (chain or archive)."""
        self._blocks[cid] = data

    def has(self, cid: Cid) -> bool:
        return cid in self._blocks

    def __contains__(self, cid: object) -> bool:
        return cid in self._blocks

    def __len__(self) -> int:
        return len(self._blocks)

    def keys(self) -> Iterator[Cid]:
        return iter(self._blocks)


class TracingBlockstore(MemoryBlockstore):
    def __init__(self) -> None:
        super().__init__()
        self._tracing = False
        self._traced: Set[Cid] = set()

    @property
    def tracing(self) -> bool:
        return self._tracing

    def start_tracing(self) -> None:
        self._traced = set()
        self._tracing = True

    def finish_tracing(self) -> Set[Cid]:
        """Stop tracing and hand over the accessed CIDs."""
        self._tracing = False
        accessed, self._traced = self._traced, set()
        return accessed

    def get(self, cid: Cid) -> bytes:
        data = self._load(cid)
        if self._tracing:
            self._traced.add(cid)
        return data

    def _load(self, cid: Cid) -> bytes:
        return super().get(cid)


class ProxyingBlockstore(TracingBlockstore):
    """Read-through store: unknown blocks are fetched from the chain.

    Reads may happen on a worker thread while the chain client lives on the
    event loop; fetches are scheduled onto that loop and waited for. Calling
    `get` for a missing block from the loop thread itself would deadlock and
    is rejected.
    """

    def __init__(self, api: "ChainAPI", loop: asyncio.AbstractEventLoop):
        super().__init__()
        self._api = api
        self._loop = loop
        self.fetched = 0

    def _load(self, cid: Cid) -> bytes:
        if self.has(cid) or inline_data(cid) is not None:
            return MemoryBlockstore.get(self, cid)

        if _running_loop() is self._loop:
            raise RuntimeError("ProxyingBlockstore fetch issued from the event loop thread")

        future = asyncio.run_coroutine_threadsafe(self._api.chain_read_obj(cid), self._loop)
        data: Optional[bytes] = future.result()
        if data is None:
            raise BlockNotFound(cid)
        self.put_raw(cid, data)
        self.fetched += 1
        logger.debug(f"fetched block from chain: {cid} ({len(data)} bytes)")
        return data


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
