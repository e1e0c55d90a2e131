# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""FastAPI application for the data explorer.

**HTTP Endpoints**

* ``GET /``: Index page with a form to open a root.
* ``GET /healthz``: Service status, node connection and traversal policy.
* ``GET|HEAD /view/{provider}/{piece}/{cid}/{path}``: Retrieve the node
  at ``path`` below ``cid`` and present it: an HTML listing for
  directories, the bytes (with ``Range`` support) for files, an HTML dump
  for structured data, the target for symlinks.  ``HEAD`` retrieves only
  what is needed to fill the ``X-HumanSize`` and ``X-Desc`` headers.
* ``GET /car/{provider}/{piece}/{cid}/{path}``: Stream the complete
  sub-DAG at ``path`` as a CAR file.
* ``GET /provider/{provider}``: Provider peer id and addresses (JSON).
* ``GET /deal/{deal_id}``: Storage deal summary with root classification;
  ``?expand=1`` also lists directory entries.
* ``GET /minersectors/{provider}``: Provider sectors with deal pieces.
* ``GET /miners``: Storage miners ranked by funds locked in the market.
* ``GET /deals``: Storage deals made through the node's client.
* ``GET /ping/miner/{provider}``: Connect to the provider's peer and
  report the ping round trip as ``<peer id> <ms>ms``.

**Errors**

Every :class:`~dataexpl.core.exceptions.DataExplError` becomes a
``500`` plain-text response carrying the error message.  Response bodies
are fully assembled before the response starts, except for ``/car``
which streams once the retrieval has succeeded.

**Logging**

Structured JSON logging (or plain text with ``DATAEXPL_LOG_FORMAT=text``)
is configured at startup using ``DATAEXPL_LOG_LEVEL``.

Architecture
------------
The lifespan context manager connects the node client and builds the
shared :class:`~dataexpl.core.explorer.Explorer`; both live on
``app.state``.  Each request builds its own block store and resolver.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse, Response, StreamingResponse
from fastapi.templating import Jinja2Templates
from multiformats import CID
from starlette.background import BackgroundTask

from dataexpl import __version__
from dataexpl.api_models import HealthResponse, PolicyInfo, ProviderInfoResponse
from dataexpl.config import (
    HTTP_HOST,
    HTTP_PORT,
    LOG_FORMAT,
    LOG_LEVEL,
    LOOKUP_CONCURRENCY,
    MAX_DIR_TYPE_CHECKS,
    MAX_PRICE,
    NODE_API_URL,
    PING_TIMEOUT_SECONDS,
    TYPE_CHECK_DEPTH,
)
from dataexpl.core.dag import DagReader, ProtoNode, canonical_cid
from dataexpl.core.deals import describe_deal, lookup_piece_cids
from dataexpl.core.exceptions import DataExplError, UnsupportedNodeError
from dataexpl.core.explorer import Explorer, ExploreRequest
from dataexpl.core.market import list_client_deals, list_miners, ping_provider
from dataexpl.core.models import ContainerDescriptor, LeafDescriptor, NodeKind, TraversalPolicy
from dataexpl.core.presenter import (
    RangeNotSatisfiableError,
    dump_structure,
    http_range,
    read_body,
    response_content_type,
)
from dataexpl.core.resolver import TypeResolver
from dataexpl.core.selector import (
    Matcher,
    archive_selector,
    file_selector,
    first_block_chain,
    preview_selector,
)
from dataexpl.core.units import size_str
from dataexpl.lotus import LotusClient

CAR_MEDIA_TYPE = "application/vnd.ipld.car"


# ======================================================================
# Structured JSON logging
# ======================================================================


class _JSONFormatter(logging.Formatter):
    """One JSON object per log line: timestamp, level, logger, message,
    module and function, plus the traceback when one is attached."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def _configure_logging() -> None:
    """Install a single stdout handler on the root logger.

    Existing handlers are removed first so running under uvicorn does
    not duplicate output.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if LOG_FORMAT.lower() == "text":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler.setFormatter(_JSONFormatter())

    root.addHandler(handler)
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    # Suppress noisy third-party loggers.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ======================================================================
# Application lifespan
# ======================================================================


def default_policy() -> TraversalPolicy:
    return TraversalPolicy(max_depth=TYPE_CHECK_DEPTH, max_width=MAX_DIR_TYPE_CHECKS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the node client on startup and close it on shutdown.

    A node that cannot be reached is logged; requests then fail with the
    connection error until the service is restarted.
    """
    _configure_logging()
    logger.info(
        "Data explorer starting: HTTP=%s:%d, node=%s, log_level=%s",
        HTTP_HOST, HTTP_PORT, NODE_API_URL, LOG_LEVEL,
    )

    client = LotusClient()
    try:
        await client.connect()
    except DataExplError as exc:
        logger.error("Node API unavailable: %s", exc)

    app.state.node = client
    app.state.explorer = Explorer(client, max_price=MAX_PRICE, policy=default_policy())

    yield

    logger.info("Data explorer shutting down")
    await client.close()


# ======================================================================
# FastAPI application
# ======================================================================

app = FastAPI(
    title="Data Explorer",
    description="Browse content held by storage providers through paid retrievals.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "HEAD"],
    allow_headers=["*"],
    expose_headers=["X-HumanSize", "X-Desc"],
)

_TEMPLATES_DIR = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(_TEMPLATES_DIR))
templates.env.filters["size_str"] = size_str

logger = logging.getLogger("dataexpl.main")


@app.exception_handler(DataExplError)
async def _core_error(request: Request, exc: DataExplError) -> PlainTextResponse:
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return PlainTextResponse(str(exc), status_code=500)


@app.exception_handler(RangeNotSatisfiableError)
async def _range_error(request: Request, exc: RangeNotSatisfiableError) -> PlainTextResponse:
    return PlainTextResponse(str(exc), status_code=416, headers={"Content-Range": f"bytes */{exc.size}"})


def _parse_cid(text: str, what: str) -> CID:
    try:
        return canonical_cid(CID.decode(text))
    except (ValueError, KeyError) as exc:
        raise DataExplError(f"invalid {what} CID {text!r}: {exc}") from exc


def _explore_request(provider: str, piece: str, cid: str, path: str) -> ExploreRequest:
    return ExploreRequest(
        provider=provider,
        piece=_parse_cid(piece, "piece"),
        root=_parse_cid(cid, "root"),
        path=path,
    )


# ======================================================================
# Endpoints
# ======================================================================


@app.get("/healthz", response_model=HealthResponse, tags=["health"])
async def healthz(request: Request) -> HealthResponse:
    """Service status, node connection and traversal policy."""
    explorer: Explorer = request.app.state.explorer
    node = request.app.state.node
    return HealthResponse(
        version=__version__,
        node_url=getattr(node, "api_url", ""),
        node_connected=bool(getattr(node, "connected", True)),
        policy=PolicyInfo(
            max_depth=explorer.policy.max_depth,
            max_width=explorer.policy.max_width,
            max_price=None if explorer.max_price is None else str(explorer.max_price),
        ),
    )


@app.get("/", response_class=HTMLResponse, tags=["ui"])
async def index(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "index.html", {})


@app.api_route("/view/{provider}/{piece}/{cid}/{path:path}", methods=["GET", "HEAD"], tags=["explore"])
async def view(request: Request, provider: str, piece: str, cid: str, path: str) -> Response:
    """Present the node at ``path``.

    Parameters
    ----------
    provider : str
        Storage provider address, e.g. ``f01234``.
    piece : str
        Piece CID the data is stored in.
    cid : str
        Data root CID.
    path : str
        Selector path below the root, e.g. ``Links/3/Hash``.

    Query parameters
    ----------------
    filename : str, optional
        Name used for content type detection and ``Content-Disposition``.
    """
    explorer: Explorer = request.app.state.explorer
    policy = explorer.policy
    req = _explore_request(provider, piece, cid, path)
    head = request.method == "HEAD"
    filename = request.query_params.get("filename", "")

    root, dag = await explorer.load_dag(req, Matcher() if head else preview_selector(policy))
    node = dag.get(root)
    resolver = explorer.resolver(dag)
    descriptor = resolver.classify(node, filename)

    headers = {"X-HumanSize": size_str(descriptor.size)}
    url = request.url.path
    car_url = url.replace("/view", "/car", 1)

    if isinstance(descriptor, ContainerDescriptor):
        headers["X-Desc"] = descriptor.summary()
        if head:
            return Response(headers=headers, media_type="text/html")
        entries = resolver.list_directory(node)
        return templates.TemplateResponse(
            request,
            "dir.html",
            {"entries": entries, "url": url, "carurl": car_url, "desc": descriptor.summary()},
            headers=headers,
        )

    if not isinstance(descriptor, LeafDescriptor):
        raise UnsupportedNodeError(f"cannot present {descriptor.summary()} node {root}")

    if descriptor.kind == NodeKind.SYMLINK:
        headers["X-Desc"] = descriptor.summary()
        return Response(node.unixfs().Data, headers=headers, media_type="text/plain")

    if descriptor.kind == NodeKind.STRUCTURED_DATA:
        headers["X-Desc"] = descriptor.summary()
        if head:
            return Response(headers=headers, media_type="text/html")
        dump = dump_structure(node.value, url, resolver, policy)
        return templates.TemplateResponse(
            request, "ipld.html", {"dump": dump, "url": url, "carurl": car_url}, headers=headers,
        )

    if isinstance(node, ProtoNode):
        # The preview holds only the first blocks; fetch what the read needs.
        sub = first_block_chain(policy) if head else file_selector(policy)
        file_root, file_dag = await explorer.load_dag(req, sub)
        resolver = explorer.resolver(file_dag)
        reader = DagReader(file_dag, file_dag.get(file_root), policy.max_depth if head else None)
        prefix = "pb"
    else:
        reader = DagReader(dag, node)
        prefix = "raw"

    return _file_response(request, reader, resolver, filename, prefix, headers)


def _file_response(
    request: Request,
    reader: DagReader,
    resolver: TypeResolver,
    filename: str,
    prefix: str,
    headers: Dict[str, str],
) -> Response:
    detected = resolver.content_type(reader, filename)
    ctype = response_content_type(detected)
    headers["X-Desc"] = f"FILE ({prefix},{detected})"
    headers["Accept-Ranges"] = "bytes"
    if filename:
        headers["Content-Disposition"] = f'inline; filename="{filename}"'

    byte_range = http_range(request.headers.get("range"), reader.size)
    if request.method == "HEAD":
        headers["Content-Length"] = str(reader.size)
        return Response(headers=headers, media_type=ctype)

    body = read_body(reader, byte_range)
    if byte_range is None:
        return Response(body, headers=headers, media_type=ctype)

    start, end = byte_range
    headers["Content-Range"] = f"bytes {start}-{end - 1}/{reader.size}"
    return Response(body, status_code=206, headers=headers, media_type=ctype)


@app.get("/car/{provider}/{piece}/{cid}/{path:path}", tags=["explore"])
async def car(request: Request, provider: str, piece: str, cid: str, path: str) -> StreamingResponse:
    """Stream the full sub-DAG at ``path`` as a CAR file."""
    explorer: Explorer = request.app.state.explorer
    req = _explore_request(provider, piece, cid, path)
    name = request.query_params.get("filename") or cid

    stack = AsyncExitStack()
    try:
        chunks = await stack.enter_async_context(explorer.open_archive_stream(req, archive_selector()))
    except BaseException:
        await stack.aclose()
        raise

    async def body() -> AsyncIterator[bytes]:
        async with stack:
            async for chunk in chunks:
                yield chunk

    return StreamingResponse(
        body(),
        media_type=CAR_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{name}.car"'},
        background=BackgroundTask(stack.aclose),
    )


@app.get("/provider/{provider}", response_model=ProviderInfoResponse, tags=["chain"])
async def provider_info(request: Request, provider: str) -> ProviderInfoResponse:
    info = await request.app.state.node.get_provider_info(provider)
    return ProviderInfoResponse.from_info(info)


@app.get("/deal/{deal_id}", response_class=HTMLResponse, tags=["chain"])
async def deal(request: Request, deal_id: int, expand: Optional[str] = None) -> HTMLResponse:
    """Deal proposal and a classification of the data it stores."""
    summary = await describe_deal(request.app.state.explorer, request.app.state.node, deal_id, expand == "1")
    return templates.TemplateResponse(request, "deal.html", {"id": deal_id, "summary": summary})


@app.get("/minersectors/{provider}", response_class=HTMLResponse, tags=["chain"])
async def miner_sectors(request: Request, provider: str) -> HTMLResponse:
    """Sectors of a provider with the piece CID of every deal they hold."""
    chain = request.app.state.node
    sectors = await chain.state_miner_sectors(provider)
    deal_ids = [d for sector in sectors for d in sector.deal_ids]
    pieces = await lookup_piece_cids(chain, deal_ids, LOOKUP_CONCURRENCY)
    logger.info("Provider %s: %d sectors, %d/%d deals resolved", provider, len(sectors), len(pieces), len(deal_ids))
    return templates.TemplateResponse(
        request, "sectors.html", {"provider": provider, "sectors": sectors, "pieces": pieces},
    )


@app.get("/miners", response_class=HTMLResponse, tags=["chain"])
async def miners(request: Request) -> HTMLResponse:
    """Storage miners ranked by locked market funds.

    The ranking is computed on first use and kept for the life of the
    process.
    """
    state = request.app.state
    ranked = getattr(state, "miners", None)
    if ranked is None:
        ranked = state.miners = await list_miners(state.node, LOOKUP_CONCURRENCY)
    return templates.TemplateResponse(request, "miners.html", {"miners": ranked})


@app.get("/deals", response_class=HTMLResponse, tags=["chain"])
async def client_deals(request: Request) -> HTMLResponse:
    """Storage deals made through the node's own client."""
    rows = list_client_deals(await request.app.state.node.client_list_deals())
    return templates.TemplateResponse(request, "client_deals.html", {"deals": rows})


@app.get("/ping/miner/{provider}", response_class=PlainTextResponse, tags=["chain"])
async def ping_miner(request: Request, provider: str) -> PlainTextResponse:
    """Dial the provider's peer and report the ping round trip."""
    node = request.app.state.node
    result = await ping_provider(node, node, provider, PING_TIMEOUT_SECONDS)
    return PlainTextResponse(str(result))


# ======================================================================
# Application runner (for direct invocation)
# ======================================================================


def main(host: str = HTTP_HOST, port: int = HTTP_PORT) -> None:
    """Run the explorer under uvicorn.

    For production deployments, use uvicorn directly::

        uvicorn dataexpl.main:app --host 0.0.0.0 --port 5658
    """
    import uvicorn

    _configure_logging()
    logger.info("Starting data explorer on %s:%d", host, port)

    uvicorn.run(
        "dataexpl.main:app",
        host=host,
        port=port,
        log_level=LOG_LEVEL.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
