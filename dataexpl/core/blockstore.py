# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Block stores: an in-memory overlay and a tiered read path.

A :class:`TieredBlockStore` pairs a read-only verified source (the "cold"
tier, normally a :class:`~dataexpl.core.car.CarBlockSource`) with a mutable
in-memory overlay (the "warm" tier).  Reads consult cold first so verified
content always wins; writes go to warm only.  Instances are per request.
"""

from typing import Dict, Iterator, Protocol

from multiformats import CID

from dataexpl.core.exceptions import BlockNotFoundError

__all__ = ["BlockSource", "MemoryBlockStore", "TieredBlockStore"]


class BlockSource(Protocol):
    def has(self, cid: CID) -> bool: ...

    def get(self, cid: CID) -> bytes: ...


class MemoryBlockStore:
    """Mutable block map."""

    def __init__(self) -> None:
        self._blocks: Dict[CID, bytes] = {}

    def has(self, cid: CID) -> bool:
        return cid in self._blocks

    def get(self, cid: CID) -> bytes:
        try:
            return self._blocks[cid]
        except KeyError:
            raise BlockNotFoundError(str(cid)) from None

    def put(self, cid: CID, data: bytes) -> None:
        self._blocks[cid] = bytes(data)

    def __iter__(self) -> Iterator[CID]:
        return iter(self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)


class TieredBlockStore:
    """Cold (verified, read-only) tier in front of a warm overlay."""

    def __init__(self, cold: BlockSource, warm: MemoryBlockStore):
        self.cold = cold
        self.warm = warm

    def has(self, cid: CID) -> bool:
        return self.cold.has(cid) or self.warm.has(cid)

    def get(self, cid: CID) -> bytes:
        if self.cold.has(cid):
            return self.cold.get(cid)
        return self.warm.get(cid)

    def put(self, cid: CID, data: bytes) -> None:
        self.warm.put(cid, data)
