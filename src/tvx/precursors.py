"""Precursor selection over a tipset's canonical message order."""

from __future__ import annotations

from enum import Enum
from typing import List, Sequence

from .errors import ConfigError
from .types import CanonicalMessage, Message


class PrecursorMode(Enum):
    # Every message preceding the target.
    ALL = "all"
    # Only preceding messages from the target's sender.
    SENDER = "sender"

    @classmethod
    def parse(cls, value: "str | PrecursorMode") -> "PrecursorMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ConfigError(f"unknown precursor selection mode: {value}") from None


def find_msg_and_precursors(
    mode: "str | PrecursorMode",
    target: Message,
    msgs: Sequence[CanonicalMessage],
) -> tuple[List[Message], bool]:
    """Scan `msgs` for `target`, collecting precursors per `mode`.

    Returns (related, found). When found, `related[-1]` is the target and
    `related[:-1]` are the precursors in canonical order.
    """
    mode = PrecursorMode.parse(mode)
    related: List[Message] = []

    for other in msgs:
        included = mode is PrecursorMode.ALL or (
            mode is PrecursorMode.SENDER and other.message.from_addr == target.from_addr
        )
        if included:
            related.append(other.message)

        if other.cid == target.cid:
            if not included:
                related.append(other.message)
            return related, True

    # A block may carry lower-nonce messages from the sender without the target.
    return related, False


def split_precursors(related: List[Message]) -> tuple[List[Message], Message]:
    return related[:-1], related[-1]
