"""tvx command line: extract vectors from a live chain and replay them."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import yaml

from .api import LotusClient
from .config import DEFAULT_ID, ExtractConfig, ExtractOptions, parse_api_info
from .engine import Executor, load_engine
from .errors import ConfigError, ExtractError
from .extract import Extraction
from .precursors import PrecursorMode
from .replay import replay_vector
from .retention import RetentionStrategy
from .vector import load_vector

logger = logging.getLogger(__name__)

_RETAIN_CHOICES = [s.value for s in RetentionStrategy]
_PRECURSOR_CHOICES = [m.value for m in PrecursorMode]


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stderr,
    )


def _require_engine(config: ExtractConfig) -> Executor:
    if not config.engine:
        raise ConfigError("no execution engine configured; pass --engine or set TVX_ENGINE")
    return load_engine(config.engine)


def _fail(exc: Exception) -> None:
    logger.error(click.style(f"failed: {exc}", fg="red"))
    sys.exit(1)


async def _run_extractions(config: ExtractConfig, engine: Executor, jobs: List[ExtractOptions]) -> List[str]:
    """Run jobs one after another; each run gets a fresh store."""
    failures = []
    async with LotusClient(config.api_url, config.api_token, config.timeout) as api:
        for opts in jobs:
            extraction = Extraction(api, engine, opts, config.buffered_writes)
            try:
                await extraction.run()
            except ExtractError as exc:
                if len(jobs) == 1:
                    raise
                logger.error(click.style(f"[{opts.id}] extraction failed: {exc}", fg="red"))
                failures.append(opts.id)
    return failures


@click.group()
@click.option("--api", "api_info", default=None, help="Full node API: URL or 'token:/ip4/<host>/tcp/<port>/http' (env FULLNODE_API_INFO)")
@click.option("--api-token", default=None, help="API bearer token")
@click.option("--engine", default=None, help="Execution engine as 'module:attribute' (env TVX_ENGINE)")
@click.option("--timeout", type=float, default=None, help="Per-request timeout in seconds; none by default")
@click.option("--buffered-writes/--no-buffered-writes", default=None, help="Buffer engine writes until execution ends")
@click.option("--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(
    ctx: click.Context,
    api_info: Optional[str],
    api_token: Optional[str],
    engine: Optional[str],
    timeout: Optional[float],
    buffered_writes: Optional[bool],
    verbose: bool,
) -> None:
    """Generate and replay message test vectors."""

    # Load config from environment, then override with CLI args
    try:
        config = ExtractConfig.from_env()
        if api_info:
            config.api_url, token = parse_api_info(api_info)
            config.api_token = token or config.api_token
    except ConfigError as exc:
        raise click.BadParameter(str(exc)) from exc

    if api_token:
        config.api_token = api_token
    if engine:
        config.engine = engine
    if timeout is not None:
        config.timeout = timeout
    if buffered_writes is not None:
        config.buffered_writes = buffered_writes
    if verbose:
        config.verbose = True

    _setup_logging(config.verbose)
    ctx.obj = config


@main.command()
@click.option("--class", "vector_class", default="message", show_default=True, help="Class of vector to extract; values: 'message'")
@click.option("--id", "vector_id", default=DEFAULT_ID, show_default=True, help="Identifier to name this test vector with")
@click.option("--block", default=None, help="Block CID the message was included in, to avoid expensive chain scanning")
@click.option("--cid", required=True, help="Message CID to generate test vector from")
@click.option("-o", "--out", "out_file", default=None, help="File to write test vector to; stdout when omitted")
@click.option("--state-retain", type=click.Choice(_RETAIN_CHOICES), default="accessed-cids", show_default=True, help="State retention policy")
@click.option(
    "--precursor-select",
    type=click.Choice(_PRECURSOR_CHOICES),
    default="sender",
    show_default=True,
    help=(
        "Precursors to apply: 'all' selects all preceding messages in the canonicalised tipset, "
        "'sender' only preceding messages from the same sender. 'sender' is usually sufficient; "
        "if the receipt check fails on gas, switch to 'all'."
    ),
)
@click.pass_obj
def extract(
    config: ExtractConfig,
    vector_class: str,
    vector_id: str,
    block: Optional[str],
    cid: str,
    out_file: Optional[str],
    state_retain: str,
    precursor_select: str,
) -> None:
    """Generate a test vector by extracting it from a live chain."""
    opts = ExtractOptions(
        cid=cid,
        id=vector_id,
        block=block,
        vector_class=vector_class,
        file=out_file,
        retain=state_retain,
        precursor=precursor_select,
    )
    try:
        engine = _require_engine(config)
        asyncio.run(_run_extractions(config, engine, [opts]))
    except ExtractError as exc:
        _fail(exc)


def load_manifest(path: str, outdir: Optional[str] = None) -> List[ExtractOptions]:
    """Read extraction jobs from a YAML manifest.

    The manifest holds optional `defaults` and a `vectors` list; each entry
    needs `cid` and may set `id`, `block`, `class`, `out`, `state_retain` and
    `precursor_select`.
    """
    with open(path) as f:
        manifest = yaml.safe_load(f) or {}

    defaults: Dict[str, Any] = manifest.get("defaults") or {}
    jobs = []
    for i, entry in enumerate(manifest.get("vectors") or []):
        merged = {**defaults, **entry}
        if not merged.get("cid"):
            raise ConfigError(f"manifest entry {i} has no cid")
        vector_id = merged.get("id") or f"{Path(path).stem}-{i}"
        out = merged.get("out")
        if outdir and not out:
            out = str(Path(outdir) / f"{vector_id}.json")
        elif outdir and not Path(out).is_absolute():
            out = str(Path(outdir) / out)
        jobs.append(ExtractOptions(
            cid=merged["cid"],
            id=vector_id,
            block=merged.get("block"),
            vector_class=merged.get("class", "message"),
            file=out,
            retain=merged.get("state_retain", "accessed-cids"),
            precursor=merged.get("precursor_select", "sender"),
        ))
    return jobs


@main.command("extract-many")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option("--outdir", default=None, help="Directory for vectors without an explicit 'out'")
@click.pass_obj
def extract_many(config: ExtractConfig, manifest: str, outdir: Optional[str]) -> None:
    """Extract every vector listed in a YAML manifest."""
    try:
        jobs = load_manifest(manifest, outdir)
        if not jobs:
            raise ConfigError(f"no vectors listed in {manifest}")
        for job in jobs:
            if not job.file:
                raise ConfigError(f"vector {job.id} has no output file; set 'out' or --outdir")
        engine = _require_engine(config)
        logger.info(f"extracting {len(jobs)} vectors")
        failures = asyncio.run(_run_extractions(config, engine, jobs))
    except ExtractError as exc:
        _fail(exc)
        return

    logger.info(f"extracted {len(jobs) - len(failures)}/{len(jobs)} vectors")
    if failures:
        logger.error(click.style(f"failed vectors: {', '.join(failures)}", fg="red"))
        sys.exit(1)


@main.command()
@click.argument("vectors", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def replay(config: ExtractConfig, vectors: tuple) -> None:
    """Replay vectors offline and check their postconditions."""
    try:
        engine = _require_engine(config)
    except ExtractError as exc:
        _fail(exc)
        return

    failed = 0
    for path in vectors:
        try:
            failures = replay_vector(load_vector(path), engine, config.buffered_writes)
        except (OSError, EOFError, ValueError, KeyError, TypeError) as exc:
            failed += 1
            logger.error(click.style(f"FAIL {path}: unreadable vector: {exc}", fg="red"))
            continue
        if failures:
            failed += 1
            for f in failures:
                logger.error(click.style(f"FAIL {f}", fg="red"))
        else:
            logger.info(click.style(f"PASS {path}", fg="green"))

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
