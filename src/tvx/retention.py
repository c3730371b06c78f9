"""State retention strategies.

Both strategies take the root reached after precursor replay and the target
message, execute the message once, and return the preroot, postroot, the
engine result and an archive writer for the minimal state needed to replay.

- accessed-cids: trace every block read during execution against the real
  tree; the archive holds the roots plus the traced blocks.
- accessed-actors: execute against a tree masked down to the actors the chain
  reports as touched (plus protocol actors); the archive is the whole masked
  graph. Correct only if the retain list is complete.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Callable, Dict

from .engine import ExecuteParams, Executor, execute_message
from .errors import ExtractError, RetentionError
from .address import network_prefix
from .statetree import protocol_actors
from .store import TracingBlockstore
from .surgeon import StateSurgeon
from .types import ApplyResult, Cid, Message, TipSet

logger = logging.getLogger(__name__)


class RetentionStrategy(Enum):
    ACCESSED_CIDS = "accessed-cids"
    ACCESSED_ACTORS = "accessed-actors"

    @classmethod
    def parse(cls, value: "str | RetentionStrategy") -> "RetentionStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise RetentionError(f"unknown state retention option: {value}") from None


@dataclass(frozen=True)
class RetentionInput:
    root: Cid
    message: Message
    exec_ts: TipSet
    # StateReplay resolves the message from the tipset that included it.
    inc_ts: TipSet
    circ_supply: int
    base_fee: int
    buffered_writes: bool = False

    def params(self, preroot: Cid) -> ExecuteParams:
        return ExecuteParams(
            preroot=preroot,
            epoch=self.exec_ts.height,
            message=self.message,
            circ_supply=self.circ_supply,
            base_fee=self.base_fee,
            buffered_writes=self.buffered_writes,
        )


@dataclass
class RetentionResult:
    preroot: Cid
    postroot: Cid
    apply_result: ApplyResult
    write_archive: Callable[[BinaryIO], int]


async def retain_accessed_cids(
    inp: RetentionInput, engine: Executor, surgeon: StateSurgeon
) -> RetentionResult:
    store = surgeon.store
    if not isinstance(store, TracingBlockstore):
        raise RetentionError("requested 'accessed-cids' state retention, but no tracing blockstore was present")

    preroot = inp.root
    store.start_tracing()
    try:
        result, postroot = await execute_message(engine, store, inp.params(preroot))
    finally:
        accessed = store.finish_tracing()
    logger.info(f"traced {len(accessed)} accessed blocks")

    def write_archive(out: BinaryIO) -> int:
        return surgeon.write_car_including(out, accessed, preroot, postroot)

    return RetentionResult(preroot, postroot, result, write_archive)


async def retain_accessed_actors(
    inp: RetentionInput, engine: Executor, surgeon: StateSurgeon
) -> RetentionResult:
    logger.info("calculating accessed actors")
    try:
        retain = await surgeon.get_accessed_actors(inp.inc_ts.key, inp.message)
    except ExtractError:
        raise
    except Exception as exc:
        raise RetentionError(f"failed to calculate accessed actors: {exc}") from exc

    retain = retain + protocol_actors(network_prefix(inp.message.from_addr))
    logger.info(f"calculated accessed actors: {retain}")

    try:
        preroot = await asyncio.to_thread(surgeon.get_masked_state_tree, inp.root, retain)
    except ExtractError:
        raise
    except Exception as exc:
        raise RetentionError(f"failed to build masked state tree: {exc}") from exc

    result, postroot = await execute_message(engine, surgeon.store, inp.params(preroot))

    def write_archive(out: BinaryIO) -> int:
        return surgeon.write_car(out, preroot, postroot)

    return RetentionResult(preroot, postroot, result, write_archive)


_STRATEGIES: Dict[RetentionStrategy, Callable] = {
    RetentionStrategy.ACCESSED_CIDS: retain_accessed_cids,
    RetentionStrategy.ACCESSED_ACTORS: retain_accessed_actors,
}


async def apply_retention(
    strategy: "str | RetentionStrategy",
    inp: RetentionInput,
    engine: Executor,
    surgeon: StateSurgeon,
) -> RetentionResult:
    strategy = RetentionStrategy.parse(strategy)
    logger.info(f"using state retention strategy: {strategy.value}")
    return await _STRATEGIES[strategy](inp, engine, surgeon)
