"""Receipt comparison between local execution and the chain."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from .types import ApplyResult, MessageReceipt


class VerificationStatus(Enum):
    VERIFIED = "verified"
    # The chain returned no receipt; nothing was compared.
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class Divergence:
    """A receipt field where local execution disagrees with the chain."""
    field: str
    expected: Any
    actual: Any

    def __str__(self) -> str:
        return f"{self.field}: expected {self.expected!r}, got {self.actual!r}"


@dataclass
class VerificationOutcome:
    status: VerificationStatus
    receipt: MessageReceipt
    divergences: List[Divergence] = field(default_factory=list)

    @property
    def has_divergences(self) -> bool:
        return len(self.divergences) > 0


def compare_receipts(expected: MessageReceipt, actual: MessageReceipt) -> List[Divergence]:
    divergences = []
    if expected.exit_code != actual.exit_code:
        divergences.append(Divergence("exit_code", expected.exit_code, actual.exit_code))
    if expected.return_value != actual.return_value:
        divergences.append(Divergence(
            "return_value", expected.return_value.hex(), actual.return_value.hex()
        ))
    if expected.gas_used != actual.gas_used:
        divergences.append(Divergence("gas_used", expected.gas_used, actual.gas_used))
    return divergences


def check_receipt(authoritative: Optional[MessageReceipt], applied: ApplyResult) -> VerificationOutcome:
    """Check a locally computed result against the chain's receipt.

    The vector always records the locally computed receipt; when the chain has
    none the check is skipped rather than passed.
    """
    local = applied.receipt
    if authoritative is None:
        return VerificationOutcome(VerificationStatus.SKIPPED, local)

    divergences = compare_receipts(authoritative, local)
    status = VerificationStatus.FAILED if divergences else VerificationStatus.VERIFIED
    return VerificationOutcome(status, local, divergences)
