# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Storage market views: active miners, client deals, provider reachability.

- :func:`list_miners` ranks storage miners by the funds they have locked
  in the market actor.
- :func:`list_client_deals` pairs the node's own deals with readable states.
- :func:`ping_provider` dials a provider's peer and measures a round trip.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List

from dataexpl.core.exceptions import DataExplError, NodeAPIError
from dataexpl.core.models import STORAGE_DEAL_ACTIVE, storage_deal_state_name
from dataexpl.core.services import ChainService, ClientDeal, RetrievalService
from dataexpl.core.units import fil_str

logger = logging.getLogger(__name__)

__all__ = ["MinerFunds", "list_miners", "ClientDealRow", "list_client_deals", "PingResult", "ping_provider"]


@dataclass(frozen=True)
class MinerFunds:
    address: str
    locked: int

    @property
    def locked_fil(self) -> str:
        return fil_str(self.locked)


async def list_miners(chain: ChainService, concurrency: int) -> List[MinerFunds]:
    """Storage miners with funds locked in the market, most locked first.

    Participants with nothing locked are skipped without an actor lookup.
    Actor lookups run concurrently, at most ``concurrency`` at a time; any
    failure aborts the listing.
    """
    participants = await chain.state_market_participants()
    candidates = [(addr, bal.locked) for addr, bal in participants.items() if bal.locked > 0]
    semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def check(address: str) -> bool:
        async with semaphore:
            return await chain.is_storage_miner(address)

    flags = await asyncio.gather(*(check(addr) for addr, _ in candidates))
    miners = [MinerFunds(addr, locked) for (addr, locked), is_miner in zip(candidates, flags) if is_miner]
    miners.sort(key=lambda m: m.locked, reverse=True)
    logger.info("%d of %d market participants are storage miners with locked funds", len(miners), len(participants))
    return miners


@dataclass(frozen=True)
class ClientDealRow:
    deal: ClientDeal
    state: str
    active: bool


def list_client_deals(deals: List[ClientDeal]) -> List[ClientDealRow]:
    """Deals in the order the node reported them, with state names."""
    return [
        ClientDealRow(deal=d, state=storage_deal_state_name(d.state), active=d.state == STORAGE_DEAL_ACTIVE)
        for d in deals
    ]


@dataclass(frozen=True)
class PingResult:
    peer_id: str
    rtt: float

    def __str__(self) -> str:
        return f"{self.peer_id} {round(self.rtt * 1000)}ms"


async def ping_provider(node: RetrievalService, chain: ChainService, provider: str, timeout: float) -> PingResult:
    """Connect to a provider's peer and ping it.

    Dialing and pinging each get ``timeout`` seconds.

    Raises:
        DataExplError: The provider has no peer id on chain.
        NodeAPIError: Dialing or pinging failed or timed out.
    """
    info = await node.get_provider_info(provider)
    if not info.peer_id:
        raise DataExplError(f"provider {provider} has no peer id on chain")

    try:
        await asyncio.wait_for(chain.net_connect(info), timeout)
    except asyncio.TimeoutError as exc:
        raise NodeAPIError("NetConnect", f"dialing {info.peer_id} took longer than {timeout}s") from exc

    try:
        rtt = await asyncio.wait_for(chain.net_ping(info.peer_id), timeout)
    except asyncio.TimeoutError as exc:
        raise NodeAPIError("NetPing", f"no ping reply from {info.peer_id} within {timeout}s") from exc

    logger.info("Provider %s peer %s answered in %.3fs", provider, info.peer_id, rtt)
    return PingResult(info.peer_id, rtt)
