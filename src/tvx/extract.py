"""Message vector extraction pipeline.

Stages run strictly in order and any failure aborts the run:

    init -> resolve -> select_precursors -> replay_precursors ->
    execute_target -> verify_receipt -> assemble -> serialize -> done

Nothing is written until every earlier stage has succeeded.
"""

from __future__ import annotations

import asyncio
import io
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, TextIO, Type

import click

from .api import ChainAPI
from .car import compress
from .config import (
    CLASS_MESSAGE,
    GENERATOR_NAME,
    GENERATOR_VERSION,
    NODE_SOURCE,
    ExtractOptions,
)
from .encoding import serialize_message
from .engine import ExecuteParams, Executor, execute_message
from .errors import (
    ConfigError,
    ExtractError,
    PrecursorNotFoundError,
    ReplayError,
    ResolutionError,
    RetentionError,
    SerializationError,
    VerificationError,
)
from .precursors import PrecursorMode, find_msg_and_precursors, split_precursors
from .resolver import resolve_from_chain
from .retention import RetentionInput, RetentionResult, RetentionStrategy, apply_retention
from .store import ProxyingBlockstore
from .surgeon import StateSurgeon
from .types import Cid, Message
from .vector import (
    GenerationData,
    Postconditions,
    Preconditions,
    TestVector,
    render_vector,
    write_vector,
)
from .verify import VerificationOutcome, VerificationStatus, check_receipt

logger = logging.getLogger(__name__)


class Stage(Enum):
    INIT = "init"
    RESOLVE = "resolve"
    SELECT_PRECURSORS = "select_precursors"
    REPLAY_PRECURSORS = "replay_precursors"
    EXECUTE_TARGET = "execute_target"
    VERIFY_RECEIPT = "verify_receipt"
    ASSEMBLE = "assemble"
    SERIALIZE = "serialize"
    DONE = "done"
    ABORTED = "aborted"


# Error raised for unexpected failures inside each stage.
_STAGE_ERRORS: Dict[Stage, Type[ExtractError]] = {
    Stage.INIT: ConfigError,
    Stage.RESOLVE: ResolutionError,
    Stage.SELECT_PRECURSORS: ResolutionError,
    Stage.REPLAY_PRECURSORS: ReplayError,
    Stage.EXECUTE_TARGET: RetentionError,
    Stage.VERIFY_RECEIPT: VerificationError,
    Stage.ASSEMBLE: SerializationError,
    Stage.SERIALIZE: SerializationError,
}


@dataclass
class ExtractionResult:
    vector: TestVector
    text: str
    verification: VerificationOutcome
    precursors: List[Message] = field(default_factory=list)


class Extraction:
    """A single extraction run.

    Owns its block store for the duration of the run; a store must not be
    shared between runs.
    """

    def __init__(
        self,
        api: ChainAPI,
        engine: Executor,
        opts: ExtractOptions,
        buffered_writes: bool = False,
        store=None,
    ):
        self.api = api
        self.engine = engine
        self.opts = opts
        self.buffered_writes = buffered_writes
        self.store = store
        self.stage = Stage.INIT

    @contextmanager
    def _stage(self, stage: Stage) -> Iterator[None]:
        self.stage = stage
        logger.debug(f"entering stage: {stage.value}")
        try:
            yield
        except ExtractError as exc:
            self.stage = Stage.ABORTED
            if exc.stage is None:
                exc.stage = stage.value
            raise
        except Exception as exc:
            self.stage = Stage.ABORTED
            raise _STAGE_ERRORS[stage](str(exc) or type(exc).__name__, stage=stage.value) from exc

    async def run(self, stream: Optional[TextIO] = None) -> ExtractionResult:
        """Build the vector and write it to the configured destination."""
        result = await self.build()
        with self._stage(Stage.SERIALIZE):
            write_vector(result.text, self.opts.file, stream)
        if self.opts.file:
            logger.info(f"wrote test vector to file: {self.opts.file}")
        self.stage = Stage.DONE
        return result

    async def build(self) -> ExtractionResult:
        opts = self.opts

        with self._stage(Stage.INIT):
            if opts.vector_class != CLASS_MESSAGE:
                raise ConfigError(f"unsupported vector class: {opts.vector_class}")
            mode = PrecursorMode.parse(opts.precursor)
            strategy = RetentionStrategy.parse(opts.retain)
            mcid = Cid(opts.cid)

        with self._stage(Stage.RESOLVE):
            msg, exec_ts, inc_ts = await resolve_from_chain(self.api, mcid, opts.block)

            # circulating supply before the message was executed.
            circ_supply = await self.api.state_circulating_supply(inc_ts.key)

            logger.info(f"message was executed in tipset: {exec_ts.key}")
            logger.info(f"message was included in tipset: {inc_ts.key}")
            logger.info(f"circulating supply at inclusion tipset: {circ_supply}")

        with self._stage(Stage.SELECT_PRECURSORS):
            logger.info(f"finding precursor messages using mode: {mode.value}")
            msgs = await self.api.chain_get_parent_messages(exec_ts.blocks[0].cid)
            related, found = find_msg_and_precursors(mode, msg, msgs)
            if not found:
                raise PrecursorNotFoundError(f"message not found; precursors found: {len(related)}")

            precursors, _ = split_precursors(related)
            logger.info(click.style(
                f"found message; precursors (count: {len(precursors)}): {[p.cid for p in precursors]}",
                fg="green",
            ))

        store = self.store
        if store is None:
            # Read-through store fetching unknown blocks with ChainReadObj.
            store = self.store = ProxyingBlockstore(self.api, asyncio.get_running_loop())
        surgeon = StateSurgeon(self.api, store)

        root = inc_ts.parent_state
        base_fee = inc_ts.parent_base_fee
        logger.info(f"base state tree root CID: {root}")
        logger.info(f"basefee: {base_fee}")

        with self._stage(Stage.REPLAY_PRECURSORS):
            logger.info(f"number of precursors to apply: {len(precursors)}")
            for i, m in enumerate(precursors):
                logger.info(f"applying precursor {i}, cid: {m.cid}")
                params = ExecuteParams(
                    preroot=root,
                    epoch=exec_ts.height,
                    message=m,
                    circ_supply=circ_supply,
                    base_fee=base_fee,
                    buffered_writes=self.buffered_writes,
                )
                try:
                    _, root = await execute_message(self.engine, store, params)
                except ReplayError as exc:
                    raise ReplayError(f"failed to execute precursor message {i} ({m.cid}): {exc.message}") from exc

        with self._stage(Stage.EXECUTE_TARGET):
            retained = await apply_retention(
                strategy,
                RetentionInput(
                    root=root,
                    message=msg,
                    exec_ts=exec_ts,
                    inc_ts=inc_ts,
                    circ_supply=circ_supply,
                    base_fee=base_fee,
                    buffered_writes=self.buffered_writes,
                ),
                self.engine,
                surgeon,
            )
            logger.info(f"message applied; preroot: {retained.preroot}, postroot: {retained.postroot}")

        with self._stage(Stage.VERIFY_RECEIPT):
            logger.info("performing sanity check on receipt")
            authoritative = await self.api.state_get_receipt(mcid, exec_ts.key)
            logger.info(f"found receipt: {authoritative}")

            outcome = check_receipt(authoritative, retained.apply_result)
            if outcome.status is VerificationStatus.FAILED:
                for d in outcome.divergences:
                    logger.error(f"receipt mismatch: {d}")
                logger.error(click.style("receipt sanity check failed; aborting", fg="red"))
                raise VerificationError(
                    "vector generation aborted; receipt mismatch on "
                    + ", ".join(d.field for d in outcome.divergences)
                )
            if outcome.status is VerificationStatus.SKIPPED:
                logger.warning(click.style(
                    "skipping receipts comparison; the node returned no receipt", fg="yellow"
                ))
            else:
                logger.info(click.style("receipt sanity check succeeded", fg="green"))

        with self._stage(Stage.ASSEMBLE):
            logger.info("generating vector")
            car = await asyncio.to_thread(_build_archive, retained)
            version = await self.api.version()
            network = await self.api.state_network_name()

            vector = TestVector(
                id=opts.id,
                gen=[
                    GenerationData(f"network:{network}"),
                    GenerationData(f"message:{msg.cid}"),
                    GenerationData(f"inclusion_tipset:{inc_ts.key}"),
                    GenerationData(f"execution_tipset:{exec_ts.key}"),
                    GenerationData(NODE_SOURCE, version),
                    GenerationData(GENERATOR_NAME, GENERATOR_VERSION),
                ],
                car=car,
                pre=Preconditions(
                    epoch=exec_ts.height,
                    circ_supply=circ_supply,
                    base_fee=base_fee,
                    root=retained.preroot,
                ),
                messages=[serialize_message(msg)],
                post=Postconditions(root=retained.postroot, receipts=[outcome.receipt]),
                vector_class=opts.vector_class,
            )
            text = render_vector(vector)

        return ExtractionResult(vector, text, outcome, list(precursors))


def _build_archive(retained: RetentionResult) -> bytes:
    buf = io.BytesIO()
    count = retained.write_archive(buf)
    logger.info(f"archive holds {count} blocks ({buf.tell()} bytes uncompressed)")
    return compress(buf.getvalue())


async def do_extract(
    api: ChainAPI,
    engine: Executor,
    opts: ExtractOptions,
    buffered_writes: bool = False,
    stream: Optional[TextIO] = None,
) -> ExtractionResult:
    return await Extraction(api, engine, opts, buffered_writes).run(stream)
