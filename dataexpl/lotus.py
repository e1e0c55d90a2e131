# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Node API client.

Talks to a Filecoin node over its JSON-RPC websocket endpoint and streams
archive exports from its HTTP ``/rest/v0/export`` endpoint.

Methods that return a channel on the node side (retrieval updates) are
delivered as ``xrpc.ch.val`` notifications carrying ``[channel, value]``
and closed by ``xrpc.ch.close``.  A single reader task dispatches
responses and channel values; the channel queue is registered by request
id before the request is sent, so no value can arrive unclaimed.
"""

import asyncio
import base64
import itertools
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx
import websockets
from multiformats import CID, multiaddr

from dataexpl.config import EXPORT_CHUNK_SIZE, NODE_API_TOKEN, NODE_API_URL, NODE_CALL_TIMEOUT_SECONDS
from dataexpl.core.exceptions import ExportError, NodeAPIError
from dataexpl.core.models import ExportRef, ProviderInfo, QueryOffer, RetrievalEvent, RetrievalOrder
from dataexpl.core.services import ClientDeal, MarketBalance, MarketDeal, SectorInfo

logger = logging.getLogger(__name__)

__all__ = ["LotusClient", "export_url"]

# Empty tipset key: query the chain head.
_HEAD: List[Any] = []

_CLOSED = object()


def _cid_json(cid: Optional[CID]) -> Optional[Dict[str, str]]:
    return None if cid is None else {"/": str(cid)}


def _cid_from_json(value: Any) -> Optional[CID]:
    if not value:
        return None
    try:
        return CID.decode(value["/"])
    except (KeyError, TypeError, ValueError) as exc:
        raise NodeAPIError("decode", f"malformed CID {value!r}") from exc


def export_url(api_url: str) -> str:
    """HTTP export endpoint on the same host as the RPC endpoint."""
    parts = urlsplit(api_url)
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, "/rest/v0/export", "", ""))


def _offer_from_json(data: Dict[str, Any]) -> QueryOffer:
    return QueryOffer(
        root=_cid_from_json(data["Root"]),
        piece=_cid_from_json(data.get("Piece")),
        size=int(data.get("Size") or 0),
        min_price=int(data.get("MinPrice") or 0),
        unseal_price=int(data.get("UnsealPrice") or 0),
        payment_interval=int(data.get("PaymentInterval") or 0),
        payment_interval_increase=int(data.get("PaymentIntervalIncrease") or 0),
        provider=data.get("Miner") or "",
        provider_peer=data.get("MinerPeer") or {},
        error=data.get("Err") or "",
    )


def _order_to_json(order: RetrievalOrder) -> Dict[str, Any]:
    return {
        "Root": _cid_json(order.root),
        "Piece": _cid_json(order.piece),
        "DataSelector": order.selector,
        "Size": order.size,
        "Total": str(order.total),
        "UnsealPrice": str(order.unseal_price),
        "PaymentInterval": order.payment_interval,
        "PaymentIntervalIncrease": order.payment_interval_increase,
        "Client": order.payer,
        "Miner": order.provider,
        "MinerPeer": order.provider_peer or None,
    }


def _event_from_json(data: Dict[str, Any]) -> RetrievalEvent:
    return RetrievalEvent(
        deal_id=int(data["ID"]),
        status=int(data["Status"]),
        bytes_received=int(data.get("BytesReceived") or 0),
        total_paid=int(data.get("TotalPaid") or 0),
        message=data.get("Message") or "",
        event=data.get("Event"),
    )


def _deal_from_json(deal_id: int, data: Dict[str, Any]) -> MarketDeal:
    proposal = data["Proposal"]
    label = proposal.get("Label") or ""
    if isinstance(label, dict):
        # Byte labels are not data roots; keep them printable.
        label = json.dumps(label)
    return MarketDeal(
        deal_id=deal_id,
        piece_cid=_cid_from_json(proposal["PieceCID"]),
        piece_size=int(proposal.get("PieceSize") or 0),
        provider=proposal.get("Provider") or "",
        client=proposal.get("Client") or "",
        label=label,
        start_epoch=int(proposal.get("StartEpoch") or 0),
        end_epoch=int(proposal.get("EndEpoch") or 0),
        verified=bool(proposal.get("VerifiedDeal")),
    )


def _client_deal_from_json(data: Dict[str, Any]) -> ClientDeal:
    ref = data.get("DataRef") or {}
    return ClientDeal(
        proposal_cid=_cid_from_json(data["ProposalCid"]),
        state=int(data.get("State") or 0),
        message=data.get("Message") or "",
        provider=data.get("Provider") or "",
        data_root=_cid_from_json(ref.get("Root")),
        piece_cid=_cid_from_json(data.get("PieceCID")),
        size=int(data.get("Size") or 0),
        price_per_epoch=int(data.get("PricePerEpoch") or 0),
        duration=int(data.get("Duration") or 0),
        deal_id=int(data.get("DealID") or 0),
        creation_time=data.get("CreationTime") or "",
        verified=bool(data.get("Verified")),
    )


def _addr_info(info: ProviderInfo) -> Dict[str, Any]:
    addrs = []
    for i, raw in enumerate(info.multiaddrs):
        try:
            addrs.append(str(multiaddr.decode(raw)))
        except (KeyError, ValueError) as exc:
            logger.warning("Parsing multiaddr %d (%s) of %s: %s", i, raw.hex(), info.address, exc)
    return {"ID": info.peer_id, "Addrs": addrs}


class LotusClient:
    """JSON-RPC client for a Lotus full node.

    Use as an async context manager, or call :meth:`connect` and
    :meth:`close` explicitly (the application lifespan does the latter).

    Args:
        api_url: Websocket RPC endpoint, e.g. ``ws://127.0.0.1:1234/rpc/v1``
        token: API token with read/write permissions
        call_timeout: Seconds to wait for each RPC response
        http_client: Client used for exports; created per export when None
    """

    def __init__(
        self,
        api_url: str = NODE_API_URL,
        token: str = NODE_API_TOKEN,
        call_timeout: float = NODE_CALL_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url
        self.token = token
        self.call_timeout = call_timeout
        self._http = http_client
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, Tuple[str, asyncio.Future]] = {}
        self._channel_requests: Dict[int, asyncio.Queue] = {}
        self._channels: Dict[int, asyncio.Queue] = {}
        self._channel_origin: Dict[int, int] = {}
        self._miner_codes: Optional[Set[CID]] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def __aenter__(self) -> "LotusClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(self.api_url, additional_headers=self._headers, max_size=None)
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise NodeAPIError("connect", f"cannot reach node at {self.api_url}: {exc}") from exc
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())
        logger.info("Connected to node API at %s", self.api_url)

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._ws = None
        self._reader = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        error: Optional[Exception] = None
        try:
            async for raw in self._ws:
                self._dispatch(json.loads(raw))
        except websockets.ConnectionClosed as exc:
            error = exc
        finally:
            reason = NodeAPIError("connection", f"node connection closed: {error or 'closed'}")
            for _, fut in self._pending.values():
                if not fut.done():
                    fut.set_exception(reason)
            self._pending.clear()
            for queue in self._channels.values():
                queue.put_nowait(_CLOSED)
            self._channels.clear()
            self._channel_origin.clear()

    def _dispatch(self, msg: Dict[str, Any]) -> None:
        method = msg.get("method")
        if method == "xrpc.ch.val":
            chan_id, value = msg["params"]
            queue = self._channels.get(chan_id)
            if queue is None:
                logger.debug("Value for unknown channel %s dropped", chan_id)
                return
            queue.put_nowait(value)
            return
        if method == "xrpc.ch.close":
            queue = self._channels.pop(msg["params"][0], None)
            if queue is not None:
                queue.put_nowait(_CLOSED)
            return

        req_id = msg.get("id")
        entry = self._pending.pop(req_id, None)
        if entry is None or entry[1].done():
            return
        method, fut = entry
        queue = self._channel_requests.pop(req_id, None)
        if "error" in msg and msg["error"]:
            err = msg["error"]
            fut.set_exception(NodeAPIError(method, err.get("message", str(err)), err.get("code")))
            return
        if queue is not None:
            self._channels[msg["result"]] = queue
            self._channel_origin[msg["result"]] = req_id
        fut.set_result(msg.get("result"))

    async def _send(self, method: str, params: List[Any], channel: Optional[asyncio.Queue] = None) -> Any:
        if self._ws is None:
            raise NodeAPIError(method, "not connected")

        req_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = (method, fut)
        if channel is not None:
            self._channel_requests[req_id] = channel

        payload = {"jsonrpc": "2.0", "id": req_id, "method": f"Filecoin.{method}", "params": params}
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(fut, self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise NodeAPIError(method, f"no response within {self.call_timeout}s") from exc
        except websockets.exceptions.WebSocketException as exc:
            raise NodeAPIError(method, str(exc)) from exc
        finally:
            self._pending.pop(req_id, None)
            self._channel_requests.pop(req_id, None)

    async def call(self, method: str, *params: Any) -> Any:
        logger.debug("RPC %s", method)
        return await self._send(method, list(params))

    # ------------------------------------------------------------------
    # Retrieval service
    # ------------------------------------------------------------------

    async def get_provider_info(self, provider: str) -> ProviderInfo:
        info = await self.call("StateMinerInfo", provider, _HEAD)
        addrs = tuple(base64.b64decode(a) for a in (info.get("Multiaddrs") or []))
        return ProviderInfo(address=provider, peer_id=info.get("PeerId"), multiaddrs=addrs)

    async def query_offer(self, provider: str, root: CID, piece: Optional[CID]) -> QueryOffer:
        data = await self.call("ClientMinerQueryOffer", provider, _cid_json(root), _cid_json(piece))
        return _offer_from_json(data)

    @asynccontextmanager
    async def subscribe_retrieval_events(self) -> AsyncIterator[AsyncIterator[RetrievalEvent]]:
        queue: asyncio.Queue = asyncio.Queue()
        chan_id = await self._send("ClientGetRetrievalUpdates", [], channel=queue)

        async def events() -> AsyncIterator[RetrievalEvent]:
            while True:
                value = await queue.get()
                if value is _CLOSED:
                    return
                yield _event_from_json(value)

        try:
            yield events()
        finally:
            self._channels.pop(chan_id, None)
            req_id = self._channel_origin.pop(chan_id, None)
            if self._ws is not None and req_id is not None:
                # Cancelling the originating request closes the channel on the node.
                cancel = {"jsonrpc": "2.0", "method": "xrpc.cancel", "params": [req_id]}
                try:
                    await self._ws.send(json.dumps(cancel))
                except websockets.exceptions.WebSocketException as exc:
                    logger.debug("Closing retrieval updates channel failed: %s", exc)

    async def submit_retrieval(self, order: RetrievalOrder) -> int:
        res = await self.call("ClientRetrieve", _order_to_json(order))
        return int(res["DealID"])

    async def cancel_retrieval(self, deal_id: int) -> None:
        await self.call("ClientCancelRetrievalDeal", deal_id)

    async def wallet_default_address(self) -> str:
        return await self.call("WalletDefaultAddress")

    @asynccontextmanager
    async def export_archive(self, ref: ExportRef, selector: str) -> AsyncIterator[AsyncIterator[bytes]]:
        export = {
            "Root": _cid_json(ref.root),
            "DAGs": [{"DataSelector": selector, "ExportMerkleProof": True}],
            "FromLocalCAR": "",
            "DealID": ref.deal_id,
        }
        params = {"export": json.dumps(export), "car": "true"}
        url = export_url(self.api_url)

        owned = self._http is None
        client = httpx.AsyncClient(timeout=httpx.Timeout(self.call_timeout, read=None)) if owned else self._http
        try:
            async with client.stream("GET", url, params=params, headers=self._headers) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode("utf-8", "replace")
                    raise ExportError(f"export of deal {ref.deal_id} returned HTTP {response.status_code}: {body}")
                yield response.aiter_bytes(EXPORT_CHUNK_SIZE)
        except httpx.HTTPError as exc:
            raise ExportError(f"export of deal {ref.deal_id} failed: {exc}") from exc
        finally:
            if owned:
                await client.aclose()

    # ------------------------------------------------------------------
    # Chain service
    # ------------------------------------------------------------------

    async def state_miner_sectors(self, provider: str) -> List[SectorInfo]:
        sectors = await self.call("StateMinerSectors", provider, None, _HEAD)
        return [
            SectorInfo(number=int(s["SectorNumber"]), deal_ids=tuple(s.get("DealIDs") or ()))
            for s in sectors or []
        ]

    async def state_market_storage_deal(self, deal_id: int) -> MarketDeal:
        data = await self.call("StateMarketStorageDeal", deal_id, _HEAD)
        return _deal_from_json(deal_id, data)

    async def state_market_participants(self) -> Dict[str, MarketBalance]:
        data = await self.call("StateMarketParticipants", _HEAD)
        return {
            addr: MarketBalance(escrow=int(bal.get("Escrow") or 0), locked=int(bal.get("Locked") or 0))
            for addr, bal in (data or {}).items()
        }

    async def _storage_miner_codes(self) -> Set[CID]:
        if self._miner_codes is None:
            version = await self.call("StateNetworkVersion", _HEAD)
            codes = await self.call("StateActorCodeCIDs", version)
            code = _cid_from_json(codes.get("storageminer"))
            self._miner_codes = {code} if code is not None else set()
        return self._miner_codes

    async def is_storage_miner(self, address: str) -> bool:
        actor = await self.call("StateGetActor", address, _HEAD)
        code = _cid_from_json(actor.get("Code"))
        if code is None:
            return False
        if code.hashfun.name == "identity":
            # Pre-bundle actors carry their name in the code CID.
            return code.raw_digest.endswith(b"/storageminer")
        return code in await self._storage_miner_codes()

    async def client_list_deals(self) -> List[ClientDeal]:
        deals = await self.call("ClientListDeals")
        return [_client_deal_from_json(d) for d in deals or []]

    async def net_connect(self, info: ProviderInfo) -> None:
        await self.call("NetConnect", _addr_info(info))

    async def net_ping(self, peer_id: str) -> float:
        # Durations come back as integer nanoseconds.
        return int(await self.call("NetPing", peer_id)) / 1e9
