"""Chain API: the calls the extractor makes against a Lotus full node.

`ChainAPI` is the interface the pipeline depends on. `LotusClient` implements
it over Lotus JSON-RPC (`Filecoin.*` methods) with aiohttp. Calls are issued
one at a time; there is no retry and no batching.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from .types import (
    BlockHeader,
    CanonicalMessage,
    Cid,
    ExecutionTrace,
    Message,
    MessageReceipt,
    MsgLookup,
    TipSet,
    TipSetKey,
)

logger = logging.getLogger(__name__)


class ChainAPI(Protocol):
    async def chain_get_message(self, cid: Cid) -> Message: ...

    async def state_search_msg(self, cid: Cid) -> Optional[MsgLookup]: ...

    async def chain_get_tipset(self, key: TipSetKey) -> TipSet: ...

    async def chain_get_tipset_by_height(self, height: int, key: TipSetKey) -> TipSet: ...

    async def chain_get_block(self, cid: Cid) -> BlockHeader: ...

    async def chain_get_parent_messages(self, block: Cid) -> List[CanonicalMessage]: ...

    async def state_circulating_supply(self, key: TipSetKey) -> int: ...

    async def state_get_receipt(self, cid: Cid, key: TipSetKey) -> Optional[MessageReceipt]: ...

    async def state_network_name(self) -> str: ...

    async def version(self) -> str: ...

    async def chain_read_obj(self, cid: Cid) -> Optional[bytes]: ...

    async def state_replay(self, key: TipSetKey, cid: Cid) -> ExecutionTrace: ...


class RPCError(Exception):
    def __init__(self, method: str, code: int, message: str):
        super().__init__(f"{method}: rpc error {code}: {message}")
        self.method = method
        self.code = code


# --- JSON decoding (Lotus wire shapes) ---


def _cid(value: Dict[str, str]) -> Cid:
    return Cid(value["/"])


def _b64(value: Optional[str]) -> bytes:
    return base64.b64decode(value) if value else b""


def decode_tipset_key(value: Optional[List[Dict[str, str]]]) -> TipSetKey:
    return TipSetKey(tuple(_cid(c) for c in value or []))


def encode_tipset_key(key: TipSetKey) -> List[Dict[str, str]]:
    return [{"/": c} for c in key.cids]


def decode_message(data: Dict[str, Any], cid: Optional[Cid] = None) -> Message:
    if cid is None:
        cid = _cid(data["CID"])
    return Message(
        cid=cid,
        version=data.get("Version", 0),
        from_addr=data["From"],
        to_addr=data["To"],
        nonce=data["Nonce"],
        value=int(data.get("Value", "0")),
        gas_limit=data.get("GasLimit", 0),
        gas_fee_cap=int(data.get("GasFeeCap", "0")),
        gas_premium=int(data.get("GasPremium", "0")),
        method=data.get("Method", 0),
        params=_b64(data.get("Params")),
    )


def decode_block(data: Dict[str, Any], cid: Cid) -> BlockHeader:
    return BlockHeader(
        cid=cid,
        height=data["Height"],
        parents=decode_tipset_key(data.get("Parents")),
        parent_state_root=_cid(data["ParentStateRoot"]),
        parent_base_fee=int(data.get("ParentBaseFee", "0")),
        miner=data.get("Miner", ""),
    )


def decode_tipset(data: Dict[str, Any]) -> TipSet:
    key = decode_tipset_key(data["Cids"])
    blocks = tuple(decode_block(b, c) for b, c in zip(data["Blocks"], key.cids))
    return TipSet(key=key, height=data["Height"], blocks=blocks)


def decode_receipt(data: Optional[Dict[str, Any]]) -> Optional[MessageReceipt]:
    if data is None:
        return None
    return MessageReceipt(
        exit_code=data["ExitCode"],
        return_value=_b64(data.get("Return")),
        gas_used=data["GasUsed"],
    )


def decode_trace(data: Dict[str, Any]) -> ExecutionTrace:
    msg = data.get("Msg") or {}
    return ExecutionTrace(
        from_addr=msg.get("From", ""),
        to_addr=msg.get("To", ""),
        subcalls=[decode_trace(s) for s in data.get("Subcalls") or []],
    )


class LotusClient:
    """JSON-RPC client for a Lotus full node."""

    def __init__(self, endpoint: str, token: Optional[str] = None, timeout: Optional[float] = None):
        self.endpoint = endpoint
        self.token = token
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._next_id = 0

    async def connect(self) -> None:
        """Initialize HTTP session."""
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers=headers,
        )

    async def close(self) -> None:
        """Close HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> "LotusClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def call(self, method: str, *params: Any) -> Any:
        if self.session is None:
            raise RuntimeError("LotusClient is not connected")
        self._next_id += 1
        body = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": f"Filecoin.{method}",
            "params": list(params),
        }
        logger.debug(f"rpc -> {method}")
        async with self.session.post(self.endpoint, json=body) as resp:
            resp.raise_for_status()
            data = await resp.json()
        if data.get("error"):
            err = data["error"]
            raise RPCError(method, err.get("code", 0), err.get("message", ""))
        return data.get("result")

    async def chain_get_message(self, cid: Cid) -> Message:
        data = await self.call("ChainGetMessage", {"/": cid})
        return decode_message(data, cid)

    async def state_search_msg(self, cid: Cid) -> Optional[MsgLookup]:
        data = await self.call("StateSearchMsg", [], {"/": cid}, -1, True)
        if data is None:
            return None
        return MsgLookup(
            message=_cid(data["Message"]),
            tipset=decode_tipset_key(data["TipSet"]),
            height=data["Height"],
            receipt=decode_receipt(data["Receipt"]),
        )

    async def chain_get_tipset(self, key: TipSetKey) -> TipSet:
        return decode_tipset(await self.call("ChainGetTipSet", encode_tipset_key(key)))

    async def chain_get_tipset_by_height(self, height: int, key: TipSetKey) -> TipSet:
        data = await self.call("ChainGetTipSetByHeight", height, encode_tipset_key(key))
        return decode_tipset(data)

    async def chain_get_block(self, cid: Cid) -> BlockHeader:
        return decode_block(await self.call("ChainGetBlock", {"/": cid}), cid)

    async def chain_get_parent_messages(self, block: Cid) -> List[CanonicalMessage]:
        data = await self.call("ChainGetParentMessages", {"/": block}) or []
        out = []
        for entry in data:
            cid = _cid(entry["Cid"])
            out.append(CanonicalMessage(cid=cid, message=decode_message(entry["Message"], cid)))
        return out

    async def state_circulating_supply(self, key: TipSetKey) -> int:
        data = await self.call("StateVMCirculatingSupplyInternal", encode_tipset_key(key))
        return int(data["FilCirculating"])

    async def state_get_receipt(self, cid: Cid, key: TipSetKey) -> Optional[MessageReceipt]:
        data = await self.call("StateGetReceipt", {"/": cid}, encode_tipset_key(key))
        return decode_receipt(data)

    async def state_network_name(self) -> str:
        return await self.call("StateNetworkName")

    async def version(self) -> str:
        data = await self.call("Version")
        return data["Version"]

    async def chain_read_obj(self, cid: Cid) -> Optional[bytes]:
        data = await self.call("ChainReadObj", {"/": cid})
        return base64.b64decode(data) if data is not None else None

    async def state_replay(self, key: TipSetKey, cid: Cid) -> ExecutionTrace:
        data = await self.call("StateReplay", encode_tipset_key(key), {"/": cid})
        return decode_trace(data["ExecutionTrace"])
