"""Test vector document: assembly, rendering and output."""

from __future__ import annotations

import base64
import json
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from .config import CLASS_MESSAGE
from .errors import SerializationError
from .types import Cid, MessageReceipt


@dataclass
class GenerationData:
    source: str
    version: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"source": self.source}
        if self.version is not None:
            out["version"] = self.version
        return out


@dataclass
class Preconditions:
    epoch: int
    circ_supply: int
    base_fee: int
    root: Cid


@dataclass
class Postconditions:
    root: Cid
    receipts: List[MessageReceipt] = field(default_factory=list)


@dataclass
class TestVector:
    id: str
    gen: List[GenerationData]
    car: bytes
    pre: Preconditions
    messages: List[bytes]
    post: Postconditions
    vector_class: str = CLASS_MESSAGE

    # Not a pytest test class despite the name.
    __test__ = False


def _cid_to_json(cid: Cid) -> Dict[str, str]:
    return {"/": cid}


def _cid_from_json(value: Any) -> Cid:
    if not isinstance(value, dict) or not isinstance(value.get("/"), str):
        raise ValueError(f"not a CID link: {value!r}")
    return Cid(value["/"])


def receipt_to_json(receipt: MessageReceipt) -> Dict[str, Any]:
    return {
        "exit_code": receipt.exit_code,
        "return": base64.b64encode(receipt.return_value).decode("ascii"),
        "gas_used": receipt.gas_used,
    }


def receipt_from_json(data: Dict[str, Any]) -> MessageReceipt:
    return MessageReceipt(
        exit_code=data["exit_code"],
        return_value=base64.b64decode(data.get("return") or ""),
        gas_used=data["gas_used"],
    )


def vector_to_json(vector: TestVector) -> Dict[str, Any]:
    return {
        "class": vector.vector_class,
        "meta": {
            "id": vector.id,
            "gen": [g.to_json() for g in vector.gen],
        },
        "car": base64.b64encode(vector.car).decode("ascii"),
        "pre": {
            "epoch": vector.pre.epoch,
            "circ_supply": vector.pre.circ_supply,
            "basefee": vector.pre.base_fee,
            "state_tree": {"root_cid": _cid_to_json(vector.pre.root)},
        },
        "apply_messages": [
            {"bytes": base64.b64encode(m).decode("ascii")} for m in vector.messages
        ],
        "post": {
            "state_tree": {"root_cid": _cid_to_json(vector.post.root)},
            "receipts": [receipt_to_json(r) for r in vector.post.receipts],
        },
    }


def vector_from_json(data: Dict[str, Any]) -> TestVector:
    meta = data.get("meta") or {}
    pre = data["pre"]
    post = data["post"]
    return TestVector(
        id=meta.get("id", ""),
        gen=[GenerationData(g["source"], g.get("version")) for g in meta.get("gen", [])],
        car=base64.b64decode(data["car"]),
        pre=Preconditions(
            epoch=pre["epoch"],
            circ_supply=pre["circ_supply"],
            base_fee=pre["basefee"],
            root=_cid_from_json(pre["state_tree"]["root_cid"]),
        ),
        messages=[base64.b64decode(m["bytes"]) for m in data.get("apply_messages", [])],
        post=Postconditions(
            root=_cid_from_json(post["state_tree"]["root_cid"]),
            receipts=[receipt_from_json(r) for r in post.get("receipts", [])],
        ),
        vector_class=data.get("class", CLASS_MESSAGE),
    )


def render_vector(vector: TestVector) -> str:
    return json.dumps(vector_to_json(vector), indent=2) + "\n"


def load_vector(path: "str | Path") -> TestVector:
    return vector_from_json(json.loads(Path(path).read_text()))


def write_vector(text: str, file: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """Write a rendered vector to `file`, or to `stream` (stdout) when no file.

    Files are written to a temporary sibling and renamed into place, so the
    destination either holds the whole document or is left untouched.
    """
    if not file:
        out = stream if stream is not None else sys.stdout
        try:
            out.write(text)
            out.flush()
        except OSError as exc:
            raise SerializationError(f"failed to write vector to output stream: {exc}") from exc
        return

    target = Path(file)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SerializationError(f"unable to create directory {target.parent}: {exc}") from exc

    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(text)
        # Temporary files are created 0600; give the vector the usual mode.
        os.chmod(tmp_name, 0o666 & ~_current_umask())
        os.replace(tmp_name, target)
    except OSError as exc:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise SerializationError(f"failed to write vector to {target}: {exc}") from exc


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask
