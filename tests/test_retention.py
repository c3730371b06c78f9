"""Retention strategies: access tracing and actor masking."""

from __future__ import annotations

import asyncio
import io

import pytest

from fakechain import (
    ALICE,
    ALICE_ID,
    BASE_FEE,
    BOB,
    BOB_ID,
    CAROL_ID,
    CIRC_SUPPLY,
    DAVE_ID,
    NOBODY,
    FakeChain,
    make_message,
)
from fakevm import EXIT_INVALID_RECEIVER, EXIT_OK, METHOD_FORWARD, ToyEngine
from tvx.car import load_car
from tvx.engine import ExecuteParams
from tvx.errors import RetentionError
from tvx.retention import RetentionInput, apply_retention
from tvx.statetree import StateTree
from tvx.store import MemoryBlockstore, ProxyingBlockstore
from tvx.surgeon import StateSurgeon
from tvx.types import ExecutionTrace


def _run_strategy(chain: FakeChain, engine, strategy, msg, root=None, store_factory=None):
    async def scenario():
        loop = asyncio.get_running_loop()
        store = store_factory() if store_factory else ProxyingBlockstore(chain, loop)
        surgeon = StateSurgeon(chain, store)
        inp = RetentionInput(
            root=root or chain.genesis,
            message=msg,
            exec_ts=chain.exec_ts,
            inc_ts=chain.inc_ts,
            circ_supply=CIRC_SUPPLY,
            base_fee=BASE_FEE,
        )
        retained = await apply_retention(strategy, inp, engine, surgeon)
        buf = io.BytesIO()
        await asyncio.to_thread(retained.write_archive, buf)
        return retained, buf.getvalue()

    return asyncio.run(scenario())


def _full_tree_execution(chain: FakeChain, msg):
    return ToyEngine().execute(chain.store, ExecuteParams(
        preroot=chain.genesis,
        epoch=chain.exec_ts.height,
        message=msg,
        circ_supply=CIRC_SUPPLY,
        base_fee=BASE_FEE,
    ))


def _replay_from_archive(archive: bytes, preroot, msg):
    roots, store = load_car(archive)
    return roots, ToyEngine().execute(store, ExecuteParams(
        preroot=preroot,
        epoch=11,
        message=msg,
        circ_supply=CIRC_SUPPLY,
        base_fee=BASE_FEE,
    ))


def test_accessed_cids_round_trip(chain: FakeChain, engine) -> None:
    msg = chain.messages[0]
    retained, archive = _run_strategy(chain, engine, "accessed-cids", msg)

    full_result, full_post = _full_tree_execution(chain, msg)
    assert retained.preroot == chain.genesis
    assert retained.postroot == full_post
    assert retained.apply_result.receipt == full_result.receipt

    roots, (result, postroot) = _replay_from_archive(archive, retained.preroot, msg)
    assert roots == [retained.preroot, retained.postroot]
    assert postroot == retained.postroot
    assert result.receipt == retained.apply_result.receipt


def test_accessed_cids_archive_is_minimal(chain: FakeChain, engine) -> None:
    msg = chain.messages[0]
    _, archive = _run_strategy(chain, engine, "accessed-cids", msg)
    _, store = load_car(archive)

    tree = StateTree.load(chain.store, chain.genesis)
    # Plain sends never read account heads.
    for addr in (BOB_ID, CAROL_ID, DAVE_ID, ALICE_ID):
        assert tree.get_actor(addr).head not in store
    # Robust sender resolution reads the init actor state.
    assert tree.get_actor("f01").head in store


def test_accessed_cids_requires_tracing_store(chain: FakeChain, engine) -> None:
    def plain_store():
        store = MemoryBlockstore()
        for cid in list(chain.store.keys()):
            store.put_raw(cid, chain.store.get(cid))
        return store

    with pytest.raises(RetentionError, match="tracing"):
        _run_strategy(chain, engine, "accessed-cids", chain.messages[0], store_factory=plain_store)
    assert engine.calls == []


def test_accessed_actors_round_trip(chain: FakeChain, engine) -> None:
    msg = chain.messages[0]
    retained, archive = _run_strategy(chain, engine, "accessed-actors", msg)

    assert retained.preroot != chain.genesis
    full_result, _ = _full_tree_execution(chain, msg)
    assert retained.apply_result.receipt == full_result.receipt

    _, (result, postroot) = _replay_from_archive(archive, retained.preroot, msg)
    assert postroot == retained.postroot
    assert result.receipt == full_result.receipt


def test_masked_tree_keeps_only_retained_actors(chain: FakeChain, engine) -> None:
    msg = chain.messages[0]
    retained, archive = _run_strategy(chain, engine, "accessed-actors", msg)
    _, store = load_car(archive)

    masked = StateTree.load(store, retained.preroot)
    assert set(masked.actor_addresses()) == {ALICE_ID, BOB_ID, "f01", "f02", "f099"}
    init_state = masked.load_init_state("f")
    # Bob is retained by ID, so his robust entry survives too.
    assert dict(init_state.entries(store)) == {ALICE: ALICE_ID, BOB: BOB_ID}


def test_masked_tree_materializes_nested_state(chain: FakeChain, engine) -> None:
    msg = make_message(ALICE, DAVE_ID, 0, value=1)
    chain.traces[msg.cid] = ExecutionTrace(msg.from_addr, msg.to_addr)
    retained, archive = _run_strategy(chain, engine, "accessed-actors", msg)
    _, store = load_car(archive)

    dave = StateTree.load(store, retained.preroot).get_actor(DAVE_ID)
    head = StateTree(store).get_head(dave)
    # The sector blob hangs off Dave's head and must travel with it.
    for sector in head["sectors"]:
        assert str(sector) in store


def test_masked_omission_changes_receipt(chain: FakeChain, engine) -> None:
    msg = make_message(ALICE, BOB_ID, 0, method=METHOD_FORWARD, value=7, params=DAVE_ID.encode())
    full_result, _ = _full_tree_execution(chain, msg)
    assert full_result.receipt.exit_code == EXIT_OK

    # Trace reports the forward hop: masked execution agrees with the full tree.
    chain.traces[msg.cid] = ExecutionTrace(msg.from_addr, msg.to_addr, [ExecutionTrace(BOB_ID, DAVE_ID)])
    retained, _ = _run_strategy(chain, engine, "accessed-actors", msg)
    assert retained.apply_result.receipt == full_result.receipt

    # Trace misses the hop: execution silently diverges instead of failing.
    chain.traces[msg.cid] = ExecutionTrace(msg.from_addr, msg.to_addr)
    retained, _ = _run_strategy(chain, ToyEngine(), "accessed-actors", msg)
    assert retained.apply_result.receipt.exit_code == EXIT_INVALID_RECEIVER
    assert retained.apply_result.receipt != full_result.receipt


def test_masking_unresolvable_address_fails(chain: FakeChain, engine) -> None:
    msg = chain.messages[0]
    chain.traces[msg.cid] = ExecutionTrace(msg.from_addr, msg.to_addr, [ExecutionTrace(BOB_ID, NOBODY)])
    with pytest.raises(RetentionError, match="address not found"):
        _run_strategy(chain, engine, "accessed-actors", msg)


def test_unknown_strategy_rejected(chain: FakeChain, engine) -> None:
    with pytest.raises(RetentionError, match="unknown state retention option"):
        _run_strategy(chain, engine, "everything", chain.messages[0])


def test_accessed_actors_replays_at_inclusion_tipset(chain: FakeChain, engine) -> None:
    msg = chain.messages[0]
    _run_strategy(chain, engine, "accessed-actors", msg)

    replays = [c for c in chain.calls if c[0] == "state_replay"]
    assert replays == [("state_replay", chain.inc_ts.key, msg.cid)]


def test_accessed_actors_rejects_replay_outside_inclusion_tipset(chain: FakeChain, engine) -> None:
    async def scenario():
        surgeon = StateSurgeon(chain, MemoryBlockstore())
        await surgeon.get_accessed_actors(chain.exec_ts.key, chain.messages[0])

    with pytest.raises(ValueError, match="not included"):
        asyncio.run(scenario())
