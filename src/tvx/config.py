"""tvx configuration: protocol constants, run options and environment config."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from .errors import ConfigError

GENERATOR_NAME = "tvx"
GENERATOR_VERSION = "0.3.0"

NODE_SOURCE = "github.com/filecoin-project/lotus"

# Vector classes
CLASS_MESSAGE = "message"

# State tree
STATE_TREE_VERSION = 5
SUPPORTED_STATE_TREE_VERSIONS = (3, 4, 5)
CAR_VERSION = 1

# Protocol actor ID payloads; the network prefix ("f", "t") is prepended.
INIT_ACTOR_ID = "01"
REWARD_ACTOR_ID = "02"
BURNT_FUNDS_ACTOR_ID = "099"

DEFAULT_ID = "(undefined)"
DEFAULT_RPC_PATH = "/rpc/v1"
DEFAULT_API_URL = "http://127.0.0.1:1234" + DEFAULT_RPC_PATH

_TRUTHY = ("true", "1", "yes")


def protocol_address(prefix: str, actor_id: str) -> str:
    return f"{prefix}{actor_id}"


@dataclass
class ExtractOptions:
    """Inputs of a single extraction run."""
    cid: str
    id: str = DEFAULT_ID
    block: Optional[str] = None
    vector_class: str = CLASS_MESSAGE
    file: Optional[str] = None
    retain: str = "accessed-cids"
    precursor: str = "sender"


@dataclass
class ExtractConfig:
    """Process-level configuration shared by all extraction runs."""
    api_url: str = DEFAULT_API_URL
    api_token: Optional[str] = None
    engine: Optional[str] = None

    # None means no timeout beyond the caller's own cancellation.
    timeout: Optional[float] = None

    # Engine writes go through a write buffer flushed at the end of execution.
    buffered_writes: bool = False
    verbose: bool = False

    @classmethod
    def from_env(cls) -> "ExtractConfig":
        """Load configuration from environment variables."""
        config = cls()

        api_info = os.environ.get("FULLNODE_API_INFO")
        if api_info:
            config.api_url, config.api_token = parse_api_info(api_info)

        config.engine = os.environ.get("TVX_ENGINE") or None

        timeout = os.environ.get("TVX_TIMEOUT")
        if timeout:
            try:
                config.timeout = float(timeout)
            except ValueError:
                raise ConfigError(f"invalid TVX_TIMEOUT: {timeout!r}") from None

        config.buffered_writes = os.environ.get(
            "TVX_BUFFERED_WRITES", ""
        ).lower() in _TRUTHY
        config.verbose = os.environ.get("VERBOSE", "").lower() in _TRUTHY

        return config


def parse_api_info(info: str) -> tuple[str, Optional[str]]:
    """Parse a Lotus API info string into (endpoint URL, token).

    Accepts `token:/ip4/<host>/tcp/<port>/http`, a bare multiaddr, or a plain
    http(s)/ws(s) URL with an optional `token:` prefix.
    """
    token: Optional[str] = None
    addr = info.strip()

    if ":" in addr and not addr.startswith("/") and not _is_url(addr):
        token, addr = addr.split(":", 1)
        token = token or None

    if _is_url(addr):
        parsed = urlparse(addr)
        scheme = {"ws": "http", "wss": "https"}.get(parsed.scheme, parsed.scheme)
        path = parsed.path if parsed.path not in ("", "/") else DEFAULT_RPC_PATH
        return f"{scheme}://{parsed.netloc}{path}", token

    parts = [p for p in addr.split("/") if p]
    if len(parts) < 4 or parts[0] not in ("ip4", "ip6", "dns", "dns4", "dns6") or parts[2] != "tcp":
        raise ConfigError(f"unsupported API address: {addr!r}")

    host = f"[{parts[1]}]" if parts[0] == "ip6" else parts[1]
    port = parts[3]
    scheme = "https" if "https" in parts[4:] or "wss" in parts[4:] else "http"
    return f"{scheme}://{host}:{port}{DEFAULT_RPC_PATH}", token


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://", "ws://", "wss://"))
