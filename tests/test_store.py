"""Block stores: tracing and chain read-through."""

from __future__ import annotations

import asyncio

import pytest

from fakechain import FakeChain
from tvx.encoding import compute_cid, encode_node
from tvx.store import BlockNotFound, MemoryBlockstore, ProxyingBlockstore, TracingBlockstore


def test_put_is_content_addressed() -> None:
    store = MemoryBlockstore()
    data = encode_node({"a": 1})
    cid = store.put(data)
    assert cid == compute_cid(data)
    assert store.get(cid) == data
    assert cid in store
    with pytest.raises(BlockNotFound):
        store.get(compute_cid(b"missing"))


def test_tracing_records_only_reads_while_enabled() -> None:
    store = TracingBlockstore()
    a = store.put(b'{"a":1}')
    b = store.put(b'{"b":2}')
    c = store.put(b'{"c":3}')

    store.get(a)
    store.start_tracing()
    assert store.tracing
    store.get(b)
    store.get(b)
    store.put(b'{"d":4}')
    accessed = store.finish_tracing()
    store.get(c)

    assert accessed == {b}
    assert not store.tracing
    assert store.finish_tracing() == set()


def test_proxying_store_fetches_and_caches(chain: FakeChain) -> None:
    async def scenario():
        store = ProxyingBlockstore(chain, asyncio.get_running_loop())
        store.start_tracing()
        first = await asyncio.to_thread(store.get, chain.genesis)
        second = await asyncio.to_thread(store.get, chain.genesis)
        return store, first, second, store.finish_tracing()

    store, first, second, accessed = asyncio.run(scenario())
    assert first == second == chain.store.get(chain.genesis)
    assert store.fetched == 1
    assert store.has(chain.genesis)
    assert accessed == {chain.genesis}
    reads = [c for c in chain.calls if c[0] == "chain_read_obj"]
    assert len(reads) == 1


def test_proxying_store_missing_block(chain: FakeChain) -> None:
    async def scenario():
        store = ProxyingBlockstore(chain, asyncio.get_running_loop())
        await asyncio.to_thread(store.get, compute_cid(b"nowhere"))

    with pytest.raises(BlockNotFound):
        asyncio.run(scenario())


def test_proxying_store_refuses_fetch_on_loop_thread(chain: FakeChain) -> None:
    async def scenario():
        store = ProxyingBlockstore(chain, asyncio.get_running_loop())
        store.get(chain.genesis)

    with pytest.raises(RuntimeError, match="event loop thread"):
        asyncio.run(scenario())


def test_identity_cids_read_inline() -> None:
    store = MemoryBlockstore()
    cid = compute_cid(b"fil/9/account", codec="raw", hashfun="identity")
    assert not store.has(cid)
    assert store.get(cid) == b"fil/9/account"
