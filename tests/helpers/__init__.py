# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Test helpers: DAG builders and an in-process fake node.

The builders synthesize real DAG-PB/UnixFS, raw and DAG-CBOR blocks so
tests exercise the same decode paths as retrieved archives.  FakeNode
answers the retrieval and chain calls from a block store and exports
archives by evaluating the submitted selector over it.
"""

import asyncio
import struct
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import dag_cbor
from multiformats import CID

from dataexpl.core.blockstore import MemoryBlockStore, TieredBlockStore
from dataexpl.core.car import CARV2_PRAGMA, write_car
from dataexpl.core.dag import CborNode, DagService, Link, Node, ProtoNode, RawNode, make_cid
from dataexpl.core.exceptions import BlockNotFoundError, ExportError, NodeAPIError
from dataexpl.core.models import (
    DealStatus,
    ExportRef,
    ProviderInfo,
    QueryOffer,
    RetrievalEvent,
    RetrievalOrder,
)
from dataexpl.core.selector import decode_selector, walk
from dataexpl.core.services import ClientDeal, MarketBalance, MarketDeal, SectorInfo
from dataexpl.core.unixfs import UnixFSType, encode_unixfs, unixfs_file_size

# Minimal PNG signature plus IHDR chunk header.
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + struct.pack(">II", 1, 1) + b"\x08\x06\x00\x00\x00"

PIECE = make_cid("raw", b"test piece")


# =========================================================================
# DAG builders
# =========================================================================

def raw_node(data: bytes) -> RawNode:
    return RawNode(make_cid("raw", data), data)


def file_node(data: bytes) -> ProtoNode:
    """Single-block UnixFS file with inline data."""
    return ProtoNode.build((), encode_unixfs(UnixFSType.FILE, data=data, filesize=len(data)))


def _file_size(node: Node) -> int:
    if isinstance(node, RawNode):
        return len(node.raw)
    return unixfs_file_size(node.unixfs())


def chunked_file(*chunks: Node) -> ProtoNode:
    """UnixFS file node over raw or file children, in order."""
    links = tuple(Link("", c.cid, c.cumulative_size) for c in chunks)
    sizes = [_file_size(c) for c in chunks]
    return ProtoNode.build(links, encode_unixfs(UnixFSType.FILE, filesize=sum(sizes), blocksizes=sizes))


def directory(entries: Sequence[Tuple[str, Node]]) -> ProtoNode:
    links = tuple(Link(name, n.cid, n.cumulative_size) for name, n in entries)
    return ProtoNode.build(links, encode_unixfs(UnixFSType.DIRECTORY))


def hamt_shard(entries: Sequence[Tuple[str, Node]], fanout: int = 256) -> ProtoNode:
    """HAMT shard whose link names are ``<2 hex digits><name>``.

    An entry with an empty name is a sub-shard and gets the bare prefix.
    """
    links = tuple(
        Link(f"{i:02X}{name}", n.cid, n.cumulative_size) for i, (name, n) in enumerate(entries)
    )
    return ProtoNode.build(links, encode_unixfs(UnixFSType.HAMT_SHARD, fanout=fanout, hash_type=0x22))


def symlink(target: str) -> ProtoNode:
    return ProtoNode.build((), encode_unixfs(UnixFSType.SYMLINK, data=target.encode()))


def metadata_node() -> ProtoNode:
    return ProtoNode.build((), encode_unixfs(UnixFSType.METADATA))


def cbor_node(value: Any) -> CborNode:
    raw = dag_cbor.encode(value)
    return CborNode(make_cid("dag-cbor", raw), raw, value)


def store_of(*nodes: Node) -> MemoryBlockStore:
    store = MemoryBlockStore()
    for node in nodes:
        store.put(node.cid, node.raw)
    return store


def dag_of(*nodes: Node) -> DagService:
    return DagService(TieredBlockStore(store_of(*nodes), MemoryBlockStore()))


def car_of(root: Node, *nodes: Node) -> bytes:
    return write_car([root.cid], ((n.cid, n.raw) for n in (root,) + nodes))


def carv2_of(car_v1: bytes, padding: int = 8) -> bytes:
    """Wrap a CARv1 payload in a CARv2 container without an index."""
    data_offset = len(CARV2_PRAGMA) + 40 + padding
    header = struct.pack("<16sQQQ", bytes(16), data_offset, len(car_v1), 0)
    return CARV2_PRAGMA + header + bytes(padding) + car_v1


# =========================================================================
# Fake node
# =========================================================================

class FakeNode:
    """Retrieval and chain services backed by an in-memory block store.

    Every submitted order gets a fresh deal id; the scripted ``statuses``
    are then published for it on all open event subscriptions.  With
    ``hang`` set, no events are published at all.
    """

    def __init__(
        self,
        *nodes: Node,
        price: int = 0,
        offer_error: str = "",
        statuses: Iterable[DealStatus] = (DealStatus.Accepted, DealStatus.Ongoing, DealStatus.Completed),
        message: str = "",
        hang: bool = False,
        noise: bool = False,
        chunk_size: int = 64,
    ):
        self.store = store_of(*nodes)
        self.price = price
        self.offer_error = offer_error
        self.statuses = list(statuses)
        self.message = message
        self.hang = hang
        self.noise = noise
        self.chunk_size = chunk_size

        self.providers: Dict[str, ProviderInfo] = {}
        self.deals: Dict[int, MarketDeal] = {}
        self.sectors: Dict[str, List[SectorInfo]] = {}
        self.participants: Dict[str, MarketBalance] = {}
        self.miner_actors: Set[str] = set()
        self.client_deals: List[ClientDeal] = []
        # Peer id to ping round trip in seconds.
        self.reachable: Dict[str, float] = {}
        self.net_delay = 0.0

        self.queries: List[Tuple[str, CID, Optional[CID]]] = []
        self.submitted: List[RetrievalOrder] = []
        self.cancelled: List[int] = []
        self.exports: List[Tuple[ExportRef, str, List[CID]]] = []
        self.actor_lookups: List[str] = []
        self.connected: List[str] = []

        self._queues: List[asyncio.Queue] = []
        self._next_deal = 100

    def put(self, *nodes: Node) -> None:
        for node in nodes:
            self.store.put(node.cid, node.raw)

    # -- retrieval ---------------------------------------------------------

    async def get_provider_info(self, provider: str) -> ProviderInfo:
        info = self.providers.get(provider)
        if info is None:
            raise NodeAPIError("StateMinerInfo", f"actor not found: {provider}")
        return info

    async def query_offer(self, provider: str, root: CID, piece: Optional[CID]) -> QueryOffer:
        self.queries.append((provider, root, piece))
        error = self.offer_error
        if not error and not self.store.has(root):
            error = f"retrieval query offer errored: {root} not found"
        return QueryOffer(
            root=root,
            piece=piece,
            size=len(self.store) * 1024,
            min_price=self.price,
            provider=provider,
            error=error,
        )

    @asynccontextmanager
    async def subscribe_retrieval_events(self):
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)

        async def events():
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event

        try:
            yield events()
        finally:
            self._queues.remove(queue)

    async def submit_retrieval(self, order: RetrievalOrder) -> int:
        self.submitted.append(order)
        deal_id = self._next_deal
        self._next_deal += 1
        if self.hang:
            return deal_id
        for queue in self._queues:
            if self.noise:
                queue.put_nowait(RetrievalEvent(deal_id + 1000, DealStatus.Errored, message="another deal"))
            for i, status in enumerate(self.statuses):
                queue.put_nowait(RetrievalEvent(
                    deal_id, status, bytes_received=1024 * i, total_paid=0, message=self.message, event=i,
                ))
        return deal_id

    def close_subscriptions(self) -> None:
        for queue in self._queues:
            queue.put_nowait(None)

    async def cancel_retrieval(self, deal_id: int) -> None:
        self.cancelled.append(deal_id)

    @asynccontextmanager
    async def export_archive(self, ref: ExportRef, selector: str):
        dag = DagService(TieredBlockStore(self.store, MemoryBlockStore()))
        try:
            result = walk(decode_selector(selector), ref.root, dag.load_data_model)
        except BlockNotFoundError as exc:
            raise ExportError(f"export failed: {exc}") from exc
        self.exports.append((ref, selector, result.blocks))
        data = write_car([result.first_match], ((c, self.store.get(c)) for c in result.blocks))

        async def chunks():
            for i in range(0, len(data), self.chunk_size):
                yield data[i:i + self.chunk_size]

        yield chunks()

    async def wallet_default_address(self) -> str:
        return "f1fakepayer"

    # -- chain -------------------------------------------------------------

    async def state_miner_sectors(self, provider: str) -> List[SectorInfo]:
        return self.sectors.get(provider, [])

    async def state_market_storage_deal(self, deal_id: int) -> MarketDeal:
        deal = self.deals.get(deal_id)
        if deal is None:
            raise NodeAPIError("StateMarketStorageDeal", f"deal {deal_id} not found")
        return deal

    def add_deal(self, deal_id: int, root: CID, provider: str = "f01000", piece: CID = PIECE) -> MarketDeal:
        deal = MarketDeal(
            deal_id=deal_id,
            piece_cid=piece,
            piece_size=32 << 30,
            provider=provider,
            client="f1client",
            label=str(root),
            start_epoch=1000,
            end_epoch=2000,
            verified=True,
        )
        self.deals[deal_id] = deal
        return deal

    async def state_market_participants(self) -> Dict[str, MarketBalance]:
        return dict(self.participants)

    async def is_storage_miner(self, address: str) -> bool:
        self.actor_lookups.append(address)
        return address in self.miner_actors

    async def client_list_deals(self) -> List[ClientDeal]:
        return list(self.client_deals)

    async def net_connect(self, info: ProviderInfo) -> None:
        if self.net_delay:
            await asyncio.sleep(self.net_delay)
        if info.peer_id not in self.reachable:
            raise NodeAPIError("NetConnect", f"failed to dial {info.peer_id}")
        self.connected.append(info.peer_id)

    async def net_ping(self, peer_id: str) -> float:
        return self.reachable[peer_id]
