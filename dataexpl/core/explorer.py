# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Request orchestration: selector -> retrieval -> export -> block store.

An :class:`Explorer` is shared by the application, but every call builds
its own negotiator, buffer, block store and DAG service, so concurrent
requests never share mutable state.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Tuple

from multiformats import CID

from dataexpl.config import ARCHIVE_MAX_SIZE_BYTES, RETRIEVAL_TIMEOUT_SECONDS
from dataexpl.core.blockstore import MemoryBlockStore, TieredBlockStore
from dataexpl.core.car import open_single_root
from dataexpl.core.dag import DagService
from dataexpl.core.exceptions import ArchiveIntegrityError
from dataexpl.core.models import TraversalPolicy
from dataexpl.core.negotiator import RetrievalNegotiator
from dataexpl.core.resolver import TypeResolver
from dataexpl.core.selector import Selector, encode_selector, path_to_selector
from dataexpl.core.services import RetrievalService

logger = logging.getLogger(__name__)

__all__ = ["ExploreRequest", "Explorer", "dag_from_archive"]


@dataclass(frozen=True)
class ExploreRequest:
    """What to fetch: a root held in a provider's piece, and a path under it."""

    provider: str
    piece: Optional[CID]
    root: CID
    path: str = ""


def dag_from_archive(data: bytes) -> Tuple[CID, DagService]:
    """Open a single-root archive as a fresh tiered store and DAG service."""
    source = open_single_root(data)
    store = TieredBlockStore(source, MemoryBlockStore())
    return source.roots[0], DagService(store)


class Explorer:
    """Retrieves the parts of a DAG a request needs.

    Args:
        service: Node API
        max_price: Price ceiling handed to every negotiator
        policy: Depth and width bounds for previews and resolvers
        timeout: Retrieval event loop deadline in seconds
        archive_max_size: Largest archive buffered by :meth:`load_dag`
    """

    def __init__(
        self,
        service: RetrievalService,
        *,
        max_price: Optional[int],
        policy: TraversalPolicy,
        timeout: float = RETRIEVAL_TIMEOUT_SECONDS,
        archive_max_size: int = ARCHIVE_MAX_SIZE_BYTES,
    ):
        self.service = service
        self.max_price = max_price
        self.policy = policy
        self.timeout = timeout
        self.archive_max_size = archive_max_size

    def negotiator(self) -> RetrievalNegotiator:
        return RetrievalNegotiator(self.service, max_price=self.max_price, timeout=self.timeout)

    def resolver(self, dag: DagService) -> TypeResolver:
        return TypeResolver(dag, self.policy)

    @asynccontextmanager
    async def open_archive_stream(self, request: ExploreRequest, sub: Selector) -> AsyncIterator[AsyncIterator[bytes]]:
        """Retrieve and export the blocks ``sub`` selects below ``request.path``.

        Yields the export's byte chunks.  The selector is compiled before any
        remote call, so a malformed path fails without side effects.
        """
        selector = encode_selector(path_to_selector(request.path, sub))
        ref = await self.negotiator().retrieve(request.provider, request.piece, request.root, selector)
        logger.debug("Exporting deal %d for %s/%s", ref.deal_id, request.root, request.path)
        async with self.service.export_archive(ref, selector) as chunks:
            yield chunks

    async def load_dag(self, request: ExploreRequest, sub: Selector) -> Tuple[CID, DagService]:
        """Retrieve, buffer and open the selected blocks.

        Returns the archive root (the node at ``request.path``) and a DAG
        service over a new per-request tiered store.

        Raises:
            ArchiveIntegrityError: The archive is oversized or malformed.
        """
        buf = bytearray()
        async with self.open_archive_stream(request, sub) as chunks:
            async for chunk in chunks:
                buf += chunk
                if len(buf) > self.archive_max_size:
                    raise ArchiveIntegrityError.too_large(len(buf), self.archive_max_size)

        root, dag = dag_from_archive(bytes(buf))
        logger.info("Loaded %d byte archive rooted at %s", len(buf), root)
        return root, dag
