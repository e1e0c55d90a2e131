# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Storage deal lookups.

- :func:`lookup_piece_cids` resolves many deal ids to piece CIDs
  concurrently (bounded fan-out, one lock around the shared result).
- :func:`deal_root` reads the data root CID from a deal label.
- :func:`describe_deal` classifies the root of a deal's data.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from multiformats import CID

from dataexpl.core.dag import DagReader, ProtoNode, canonical_cid
from dataexpl.core.exceptions import BlockNotFoundError, DataExplError, TraversalDepthError
from dataexpl.core.explorer import Explorer, ExploreRequest
from dataexpl.core.models import (
    ContainerDescriptor,
    DirEntry,
    LeafDescriptor,
    NodeKind,
    TraversalPolicy,
)
from dataexpl.core.resolver import TypeResolver
from dataexpl.core.selector import first_block_chain
from dataexpl.core.services import ChainService, MarketDeal
from dataexpl.core.units import size_str

logger = logging.getLogger(__name__)

__all__ = ["lookup_piece_cids", "deal_root", "describe_deal", "DealSummary"]


async def lookup_piece_cids(chain: ChainService, deal_ids: Iterable[int], concurrency: int) -> Dict[int, CID]:
    """Map deal ids to piece CIDs.

    Lookups run concurrently, at most ``concurrency`` at a time.  A failed
    lookup is logged and left out of the result.
    """
    result: Dict[int, CID] = {}
    lock = asyncio.Lock()
    semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def lookup(deal_id: int) -> None:
        async with semaphore:
            try:
                deal = await chain.state_market_storage_deal(deal_id)
            except DataExplError as exc:
                logger.warning("Looking up deal %d failed: %s", deal_id, exc)
                return
        async with lock:
            result[deal_id] = deal.piece_cid

    await asyncio.gather(*(lookup(d) for d in deal_ids))
    return result


def deal_root(deal: MarketDeal) -> CID:
    """Data root CID recorded in the deal label."""
    try:
        return canonical_cid(CID.decode(deal.label.strip()))
    except (ValueError, KeyError) as exc:
        raise DataExplError(f"deal {deal.deal_id} label {deal.label!r} is not a CID: {exc}") from exc


@dataclass
class DealSummary:
    """What a deal stores, as shown on the deal page.

    Attributes:
        kind: Short type text, e.g. ``DIR`` or ``FILE(image/png)``
        size: Human-readable size
        links: Number of directory entries (0 for leaves)
        entries: Listing, filled only when expanded
    """

    deal: MarketDeal
    root: CID
    kind: str
    size: str
    links: int = 0
    entries: List[DirEntry] = field(default_factory=list)


async def describe_deal(explorer: Explorer, chain: ChainService, deal_id: int, expand: bool = False) -> DealSummary:
    """Fetch the first block chain of a deal's root and classify it."""
    deal = await chain.state_market_storage_deal(deal_id)
    root = deal_root(deal)

    request = ExploreRequest(provider=deal.provider, piece=deal.piece_cid, root=root)
    root_cid, dag = await explorer.load_dag(request, first_block_chain(explorer.policy))
    node = dag.get(root_cid)
    resolver = explorer.resolver(dag)
    descriptor = resolver.classify(node)

    summary = DealSummary(deal=deal, root=root, kind=descriptor.summary(), size=size_str(descriptor.size))

    if isinstance(descriptor, ContainerDescriptor):
        summary.kind = "HAMT" if descriptor.kind == NodeKind.SHARDED_DIRECTORY else "DIR"
        summary.links = descriptor.entries
        if expand and isinstance(node, ProtoNode):
            # Listing only; entries are described on demand.
            lister = TypeResolver(dag, TraversalPolicy(explorer.policy.max_depth, 0))
            summary.entries = lister.list_directory(node)
    elif isinstance(descriptor, LeafDescriptor) and descriptor.kind in (NodeKind.FILE, NodeKind.RAW_FILE):
        try:
            ctype = resolver.content_type(DagReader(dag, node, explorer.policy.max_depth))
        except (TraversalDepthError, BlockNotFoundError) as exc:
            logger.info("Content type of deal %d root undetermined: %s", deal_id, exc)
            ctype = "?"
        summary.kind = f"FILE({ctype})"

    return summary
