"""Locate a message and the tipsets it was included and executed in."""

from __future__ import annotations

import logging
from typing import Optional

from .api import ChainAPI
from .errors import ResolutionError
from .types import EMPTY_TSK, Cid, Message, TipSet, TipSetKey

logger = logging.getLogger(__name__)


async def resolve_from_chain(
    api: ChainAPI, mcid: Cid, block: Optional[Cid] = None
) -> tuple[Message, TipSet, TipSet]:
    """Return (message, execution tipset, inclusion tipset).

    The block hint, when given, is the CID of a block the message was
    included in; it avoids a chain-wide message search.
    """
    try:
        msg = await api.chain_get_message(mcid)
    except Exception as exc:
        raise ResolutionError(f"failed to fetch message {mcid}: {exc}") from exc

    logger.info(f"found message with CID {mcid}: {msg}")

    if not block:
        logger.info("locating message in blockchain")
        try:
            lookup = await api.state_search_msg(mcid)
        except Exception as exc:
            raise ResolutionError(f"failed to locate message: {exc}") from exc
        if lookup is None:
            raise ResolutionError(f"message {mcid} not found on chain")

        exit_code = lookup.receipt.exit_code if lookup.receipt else None
        logger.info(
            f"located message at tipset {lookup.tipset} (height: {lookup.height}) "
            f"with exit code: {exit_code}"
        )
        exec_ts, inc_ts = await fetch_this_and_prev_tipset(api, lookup.tipset)
        return msg, exec_ts, inc_ts

    logger.info(f"message inclusion block CID was provided; scanning around it: {block}")

    try:
        blk = await api.chain_get_block(block)
    except Exception as exc:
        raise ResolutionError(f"failed to get block: {exc}") from exc

    # The empty key means "walk back from the head".
    try:
        exec_ts = await api.chain_get_tipset_by_height(blk.height + 1, EMPTY_TSK)
    except Exception as exc:
        raise ResolutionError(f"failed to get message execution tipset: {exc}") from exc

    # Walk back from the execution tipset instead of the head.
    try:
        inc_ts = await api.chain_get_tipset_by_height(blk.height, exec_ts.key)
    except Exception as exc:
        raise ResolutionError(f"failed to get message inclusion tipset: {exc}") from exc

    _check_parentage(exec_ts, inc_ts)
    return msg, exec_ts, inc_ts


async def fetch_this_and_prev_tipset(api: ChainAPI, target: TipSetKey) -> tuple[TipSet, TipSet]:
    """Fetch the tipset for `target` and its parent.

    For vector generation the target is where the message was executed and
    the parent is where it was included.
    """
    try:
        target_ts = await api.chain_get_tipset(target)
    except Exception as exc:
        raise ResolutionError(f"failed to get execution tipset {target}: {exc}") from exc

    try:
        prev_ts = await api.chain_get_tipset(target_ts.parents)
    except Exception as exc:
        raise ResolutionError(f"failed to get inclusion tipset {target_ts.parents}: {exc}") from exc

    _check_parentage(target_ts, prev_ts)
    return target_ts, prev_ts


def _check_parentage(exec_ts: TipSet, inc_ts: TipSet) -> None:
    if inc_ts.key != exec_ts.parents:
        raise ResolutionError(
            f"inclusion tipset {inc_ts.key} (height {inc_ts.height}) is not the parent "
            f"of execution tipset {exec_ts.key} (parents {exec_ts.parents})"
        )
