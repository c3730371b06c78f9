"""Consume produced vectors: replay them offline and check postconditions."""

from __future__ import annotations

import logging
from typing import List

from .car import decompress, load_car
from .encoding import deserialize_message
from .engine import ExecuteParams, Executor
from .verify import compare_receipts
from .vector import TestVector

logger = logging.getLogger(__name__)


def replay_vector(vector: TestVector, engine: Executor, buffered_writes: bool = False) -> List[str]:
    """Re-execute a vector using only the blocks in its archive.

    Returns a list of failure descriptions; empty means the vector replays.
    """
    failures: List[str] = []

    roots, store = load_car(decompress(vector.car))
    if vector.pre.root not in roots:
        failures.append(f"{vector.id}: preroot {vector.pre.root} is not an archive root")

    root = vector.pre.root
    receipts = []
    for i, raw in enumerate(vector.messages):
        msg = deserialize_message(raw)
        params = ExecuteParams(
            preroot=root,
            epoch=vector.pre.epoch,
            message=msg,
            circ_supply=vector.pre.circ_supply,
            base_fee=vector.pre.base_fee,
            buffered_writes=buffered_writes,
        )
        try:
            result, root = engine.execute(store, params)
        except Exception as exc:
            failures.append(f"{vector.id}: message {i} failed to execute: {exc}")
            return failures
        receipts.append(result.receipt)

    if root != vector.post.root:
        failures.append(f"{vector.id}: postroot mismatch: expected {vector.post.root}, got {root}")

    if len(receipts) != len(vector.post.receipts):
        failures.append(
            f"{vector.id}: receipt count mismatch: expected {len(vector.post.receipts)}, got {len(receipts)}"
        )

    for i, (expected, actual) in enumerate(zip(vector.post.receipts, receipts)):
        for d in compare_receipts(expected, actual):
            failures.append(f"{vector.id}: receipt {i} {d}")

    return failures
