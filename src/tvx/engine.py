"""Execution engine interface.

The engine applies one message to a state tree held in a block store and
returns the result and the new root. It is deterministic given identical
inputs and store contents. Engines are loaded from a `module:attribute`
path; the attribute is either an engine instance or a zero-argument factory.
"""

from __future__ import annotations

import asyncio
import importlib
from dataclasses import dataclass
from typing import Protocol, Tuple

from .errors import ConfigError, ExtractError, ReplayError
from .types import ApplyResult, Cid, Message


@dataclass(frozen=True)
class ExecuteParams:
    preroot: Cid
    epoch: int
    message: Message
    circ_supply: int
    base_fee: int
    # Stage writes in a buffer flushed once execution ends instead of writing
    # straight to the store.
    buffered_writes: bool = False


class Executor(Protocol):
    def execute(self, store, params: ExecuteParams) -> Tuple[ApplyResult, Cid]: ...


def load_engine(path: str) -> Executor:
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"engine must be given as 'module:attribute', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"cannot import engine module {module_name!r}: {exc}") from exc

    try:
        target = getattr(module, attr)
    except AttributeError:
        raise ConfigError(f"engine module {module_name!r} has no attribute {attr!r}") from None

    if isinstance(target, type) or not hasattr(target, "execute"):
        engine = target()
    else:
        engine = target
    if not callable(getattr(engine, "execute", None)):
        raise ConfigError(f"{path!r} does not provide an execute() method")
    return engine


async def execute_message(engine: Executor, store, params: ExecuteParams) -> Tuple[ApplyResult, Cid]:
    """Run the engine on a worker thread so store reads may reach the chain."""
    try:
        return await asyncio.to_thread(engine.execute, store, params)
    except ExtractError:
        raise
    except Exception as exc:
        raise ReplayError(f"failed to execute message {params.message.cid}: {exc}") from exc
