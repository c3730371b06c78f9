"""tvx error codes and exceptions."""

from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ErrorCode(IntEnum):
    # Chain lookup
    RESOLUTION = 0x01
    PRECURSOR_NOT_FOUND = 0x02

    # Execution
    REPLAY = 0x10
    RETENTION = 0x11

    # Receipt check
    VERIFICATION = 0x20

    # Output
    SERIALIZATION = 0x30

    # Setup
    CONFIG = 0xF0
    INTERNAL = 0xFF


class ExtractError(Exception):
    """Base error for every extraction stage.

    `stage` is filled in by the pipeline when the error crosses a stage
    boundary, so the final message names where the run stopped.
    """

    code = ErrorCode.INTERNAL

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        text = f"{self.code.name}({self.code:#04x}): {self.message}"
        if self.stage:
            return f"[{self.stage}] {text}"
        return text


class ResolutionError(ExtractError):
    code = ErrorCode.RESOLUTION


class PrecursorNotFoundError(ExtractError):
    code = ErrorCode.PRECURSOR_NOT_FOUND


class ReplayError(ExtractError):
    code = ErrorCode.REPLAY


class RetentionError(ExtractError):
    code = ErrorCode.RETENTION


class VerificationError(ExtractError):
    code = ErrorCode.VERIFICATION


class SerializationError(ExtractError):
    code = ErrorCode.SERIALIZATION


class ConfigError(ExtractError):
    code = ErrorCode.CONFIG
