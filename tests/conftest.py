"""Shared fixtures: an in-memory chain and the toy execution engine."""

from __future__ import annotations

from typing import Callable

import pytest

from fakechain import FakeChain
from fakevm import ToyEngine
from tvx.config import ExtractOptions


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def engine() -> ToyEngine:
    return ToyEngine()


@pytest.fixture
def target(chain: FakeChain):
    """The read-head message from Alice at canonical position 3."""
    return chain.messages[3]


@pytest.fixture
def make_opts(target) -> Callable[..., ExtractOptions]:
    def _make_opts(**overrides) -> ExtractOptions:
        values = {"cid": target.cid, "id": "alice-read-head"}
        values.update(overrides)
        return ExtractOptions(**values)

    return _make_opts
