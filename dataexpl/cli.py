# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Data explorer CLI.

Commands:
    dataexpl serve                            Run the HTTP explorer
    dataexpl inspect <car> [path]             Classify a node of a local CAR file
    dataexpl retrieve <provider> <piece> <cid> Retrieve a sub-DAG into a CAR file
"""

import asyncio
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from multiformats import CID
from rich.console import Console
from rich.table import Table

from dataexpl import __version__
from dataexpl.config import (
    HTTP_HOST,
    HTTP_PORT,
    MAX_DIR_TYPE_CHECKS,
    MAX_PRICE,
    TYPE_CHECK_DEPTH,
    parse_max_price,
)
from dataexpl.core.dag import DagReader, ProtoNode
from dataexpl.core.exceptions import DataExplError
from dataexpl.core.explorer import Explorer, ExploreRequest, dag_from_archive
from dataexpl.core.models import ContainerDescriptor, LeafDescriptor, NodeKind, TraversalPolicy
from dataexpl.core.resolver import TypeResolver
from dataexpl.core.selector import archive_selector, path_to_selector, walk

# Exit codes
EXIT_SUCCESS = 0
EXIT_RETRIEVAL_FAILURE = 1
EXIT_PARSE_ERROR = 2
EXIT_IO_ERROR = 3

app = typer.Typer(
    name="dataexpl",
    help="Data explorer - browse content held by storage providers.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


class OutputFormat(str, Enum):
    """Output format options."""

    json = "json"
    pretty = "pretty"
    table = "table"


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"dataexpl version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Data explorer - browse content held by storage providers.

    Examples:
        dataexpl serve --port 5658
        dataexpl inspect retrieval.car Links/0/Hash --format table
        dataexpl retrieve f01234 baga6ea4... bafybei... --out data.car
    """
    pass


def output_error(code: str, message: str, exit_code: int = EXIT_RETRIEVAL_FAILURE) -> None:
    """Write an error as JSON to stderr and exit."""
    print(json.dumps({"error": True, "code": code, "message": message}), file=sys.stderr)
    raise typer.Exit(exit_code)


def _output(data: Dict[str, Any], format: OutputFormat) -> None:
    if format != OutputFormat.table:
        print(json.dumps(data, indent=2 if format == OutputFormat.pretty else None, default=str))
        return

    console = Console()
    summary = Table(show_header=False)
    for key in ("cid", "kind", "summary", "size", "content_type"):
        if data.get(key) not in (None, ""):
            summary.add_row(key, str(data[key]))
    console.print(summary)

    entries: List[Dict[str, Any]] = data.get("entries") or []
    if entries:
        table = Table(title="Entries", show_header=True, header_style="bold")
        for col in ("name", "size", "desc", "path", "cid"):
            table.add_column(col)
        for row in entries:
            table.add_row(*(str(row.get(col, "")) for col in ("name", "size", "desc", "path", "cid")))
        console.print(table)


def _policy(max_depth: int, max_width: int) -> TraversalPolicy:
    try:
        return TraversalPolicy(max_depth=max_depth, max_width=max_width)
    except ValueError as e:
        output_error("INVALID_POLICY", str(e), EXIT_PARSE_ERROR)


@app.command("serve")
def serve_cmd(
    host: str = typer.Option(HTTP_HOST, "--host", help="Interface to bind"),
    port: int = typer.Option(HTTP_PORT, "--port", "-p", help="Port to listen on"),
) -> None:
    """Run the HTTP explorer under uvicorn."""
    from dataexpl.main import main as run_server

    run_server(host=host, port=port)


@app.command("inspect")
def inspect_cmd(
    car_file: Path = typer.Argument(..., help="Single-root CAR file"),
    path: str = typer.Argument("", help="Path below the root, e.g. 'Links/0/Hash'"),
    filename: str = typer.Option("", "--filename", help="Name used for content type detection"),
    max_depth: int = typer.Option(TYPE_CHECK_DEPTH, "--max-depth", help="Type check depth bound"),
    max_width: int = typer.Option(MAX_DIR_TYPE_CHECKS, "--max-width", help="Entries described eagerly"),
    format: OutputFormat = typer.Option(OutputFormat.json, "--format", "-f", help="Output format"),
) -> None:
    """Classify the node at PATH in a local CAR file, listing directories.

    Nothing is fetched: links to blocks the archive does not hold are
    reported as tentative.
    """
    try:
        data = car_file.read_bytes()
    except OSError as e:
        output_error("IO_ERROR", f"reading {car_file}: {e}", EXIT_IO_ERROR)

    policy = _policy(max_depth, max_width)
    try:
        root, dag = dag_from_archive(data)
        target = root
        if path:
            target = walk(path_to_selector(path), root, dag.load_data_model).first_match
            if target is None:
                output_error("PATH_NOT_FOUND", f"{path!r} does not lead to a block below {root}", EXIT_PARSE_ERROR)

        node = dag.get(target)
        resolver = TypeResolver(dag, policy)
        descriptor = resolver.classify(node, filename)
        result: Dict[str, Any] = {
            "cid": str(target),
            "kind": descriptor.kind.value,
            "summary": descriptor.summary(),
            "size": descriptor.size,
        }

        if isinstance(descriptor, ContainerDescriptor) and isinstance(node, ProtoNode):
            result["entries"] = [
                {
                    "name": e.name,
                    "size": e.size,
                    "cid": str(e.cid),
                    "path": e.path,
                    "desc": "?" if e.deferred else e.desc,
                    "full": e.full,
                }
                for e in resolver.list_directory(node)
            ]
        elif isinstance(descriptor, LeafDescriptor) and descriptor.kind in (NodeKind.FILE, NodeKind.RAW_FILE):
            result["content_type"] = resolver.content_type(DagReader(dag, node, policy.max_depth), filename)
    except DataExplError as e:
        output_error(type(e).__name__, str(e), EXIT_PARSE_ERROR)

    _output(result, format)


async def _retrieve(request: ExploreRequest, out: Path, max_price: Optional[int], policy: TraversalPolicy) -> int:
    from dataexpl.lotus import LotusClient

    written = 0
    async with LotusClient() as client:
        explorer = Explorer(client, max_price=max_price, policy=policy)
        async with explorer.open_archive_stream(request, archive_selector()) as chunks:
            with out.open("wb") as f:
                async for chunk in chunks:
                    f.write(chunk)
                    written += len(chunk)
    return written


@app.command("retrieve")
def retrieve_cmd(
    provider: str = typer.Argument(..., help="Storage provider address, e.g. f01234"),
    piece: str = typer.Argument(..., help="Piece CID holding the data"),
    cid: str = typer.Argument(..., help="Data root CID"),
    path: str = typer.Option("", "--path", help="Path below the root"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Output file (default: <cid>.car)"),
    max_price: Optional[str] = typer.Option(
        None,
        "--max-price",
        help="Price ceiling in attoFIL, or 'any' (default: DATAEXPL_MAX_PRICE)",
    ),
) -> None:
    """Negotiate a retrieval and save the complete sub-DAG as a CAR file."""
    try:
        ceiling = MAX_PRICE if max_price is None else parse_max_price(max_price)
        request = ExploreRequest(provider=provider, piece=CID.decode(piece), root=CID.decode(cid), path=path)
    except (ValueError, KeyError) as e:
        output_error("INVALID_ARGUMENT", str(e), EXIT_PARSE_ERROR)

    target = out or Path(f"{cid}.car")
    policy = TraversalPolicy(max_depth=TYPE_CHECK_DEPTH, max_width=MAX_DIR_TYPE_CHECKS)
    try:
        written = asyncio.run(_retrieve(request, target, ceiling, policy))
    except DataExplError as e:
        output_error(type(e).__name__, str(e), EXIT_RETRIEVAL_FAILURE)
    except OSError as e:
        output_error("IO_ERROR", f"writing {target}: {e}", EXIT_IO_ERROR)

    typer.echo(f"Wrote {written} bytes to {target}", err=True)


if __name__ == "__main__":
    app()
