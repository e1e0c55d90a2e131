# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Interfaces of the external services the core consumes.

:class:`dataexpl.lotus.LotusClient` implements both protocols against a
node's JSON-RPC API.  Tests substitute in-process fakes.
"""

from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from multiformats import CID

from dataexpl.core.models import ExportRef, ProviderInfo, QueryOffer, RetrievalEvent, RetrievalOrder


@dataclass(frozen=True)
class SectorInfo:
    """On-chain sector and the storage deals it holds."""

    number: int
    deal_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class MarketDeal:
    """Storage deal proposal as recorded by the market actor.

    Attributes:
        piece_cid: Piece commitment of the deal
        label: Free-form proposal label; conventionally the data root CID
    """

    deal_id: int
    piece_cid: CID
    piece_size: int
    provider: str
    client: str
    label: str
    start_epoch: int
    end_epoch: int
    verified: bool = False


@dataclass(frozen=True)
class MarketBalance:
    """Escrow and locked funds of a market participant, in attoFIL."""

    escrow: int
    locked: int


@dataclass(frozen=True)
class ClientDeal:
    """Storage deal made through the node's own client.

    Attributes:
        state: Storage deal state code; see :func:`storage_deal_state_name`
        data_root: Root of the stored data, None when the node lost track of it
    """

    proposal_cid: CID
    state: int
    message: str
    provider: str
    data_root: Optional[CID]
    piece_cid: Optional[CID]
    size: int
    price_per_epoch: int
    duration: int
    deal_id: int
    creation_time: str = ""
    verified: bool = False


class RetrievalService(Protocol):
    async def get_provider_info(self, provider: str) -> ProviderInfo: ...

    async def query_offer(self, provider: str, root: CID, piece: Optional[CID]) -> QueryOffer: ...

    def subscribe_retrieval_events(self) -> AsyncContextManager[AsyncIterator[RetrievalEvent]]:
        """Open the shared event subscription.

        The subscription is live once the context manager has been entered,
        so orders submitted afterwards cannot miss their first events.
        """
        ...

    async def submit_retrieval(self, order: RetrievalOrder) -> int: ...

    async def cancel_retrieval(self, deal_id: int) -> None: ...

    def export_archive(self, ref: ExportRef, selector: str) -> AsyncContextManager[AsyncIterator[bytes]]:
        """Stream the CAR for a completed retrieval, limited to ``selector``."""
        ...

    async def wallet_default_address(self) -> str: ...


class ChainService(Protocol):
    async def state_miner_sectors(self, provider: str) -> List[SectorInfo]: ...

    async def state_market_storage_deal(self, deal_id: int) -> MarketDeal: ...

    async def state_market_participants(self) -> Dict[str, MarketBalance]: ...

    async def is_storage_miner(self, address: str) -> bool:
        """Whether the actor at ``address`` is a storage miner actor."""
        ...

    async def client_list_deals(self) -> List[ClientDeal]: ...

    async def net_connect(self, info: ProviderInfo) -> None:
        """Dial the provider's peer at its on-chain addresses."""
        ...

    async def net_ping(self, peer_id: str) -> float:
        """Round trip time to a connected peer, in seconds."""
        ...
