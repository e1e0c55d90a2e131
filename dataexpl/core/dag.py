# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Merkle-DAG node service and the lazy UnixFS file reader.

:class:`DagService` decodes blocks from a store into typed nodes according
to the codec of their CID:

- ``dag-pb``   -> :class:`ProtoNode`
- ``raw``      -> :class:`RawNode`
- ``dag-cbor`` -> :class:`CborNode` (decode failure is fatal)
- anything else -> :class:`OpaqueNode`

:class:`DagReader` exposes a UnixFS file (or raw block) as a seekable
binary stream.  It loads only the blocks overlapping each read, so sniffing
the first bytes of a large file touches a single chain of blocks.
"""

import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import dag_cbor
from dag_cbor.decoding import DAGCBORDecodingError
from multiformats import CID, multihash

from dataexpl.core.blockstore import TieredBlockStore
from dataexpl.core.exceptions import (
    NodeDecodeError,
    TraversalDepthError,
    UnsupportedNodeError,
)
from dataexpl.core.unixfs import (
    DecodeError,
    UnixFSType,
    decode_pbnode,
    decode_unixfs,
    encode_pbnode,
    unixfs_file_size,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Link",
    "ProtoNode",
    "RawNode",
    "CborNode",
    "OpaqueNode",
    "Node",
    "DagService",
    "DagReader",
    "make_cid",
    "canonical_cid",
    "decode_cbor",
]

DAG_PB = "dag-pb"
RAW = "raw"
DAG_CBOR = "dag-cbor"


def make_cid(codec: str, data: bytes) -> CID:
    """CIDv1 (sha2-256) addressing ``data`` under ``codec``."""
    return CID("base32", 1, codec, multihash.digest(data, "sha2-256"))


def canonical_cid(cid: CID) -> CID:
    """Same CID with the base32 multibase used for CIDv1 text.

    Binary decoding yields base58btc; CIDv0 stays base58btc.
    """
    if cid.version == 1 and cid.base.name != "base32":
        return cid.set(base="base32")
    return cid


def _canonical_value(value: Any) -> Any:
    if isinstance(value, CID):
        return canonical_cid(value)
    if isinstance(value, dict):
        return {k: _canonical_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_canonical_value(v) for v in value]
    return value


def decode_cbor(raw: bytes) -> Any:
    """Decode DAG-CBOR with every embedded CID in canonical form.

    Raises:
        DAGCBORDecodingError: The bytes are not valid DAG-CBOR.
    """
    return _canonical_value(dag_cbor.decode(raw))


# =============================================================================
# Nodes
# =============================================================================

@dataclass(frozen=True)
class Link:
    """Named, sized edge of a DAG-PB node."""

    name: str
    cid: CID
    size: int


@dataclass(frozen=True)
class ProtoNode:
    cid: CID
    raw: bytes
    links: Tuple[Link, ...]
    data: bytes = b""

    @classmethod
    def build(cls, links: Tuple[Link, ...], data: bytes) -> "ProtoNode":
        """Synthesize a node and compute its CID."""
        raw = encode_pbnode(((bytes(l.cid), l.name, l.size) for l in links), data)
        return cls(make_cid(DAG_PB, raw), raw, tuple(links), data)

    def unixfs(self):
        """Decode the UnixFS descriptor carried in ``data``."""
        try:
            return decode_unixfs(self.data)
        except DecodeError as exc:
            raise NodeDecodeError(str(self.cid), "unixfs", str(exc)) from exc

    @property
    def cumulative_size(self) -> int:
        return len(self.raw) + sum(l.size for l in self.links)


@dataclass(frozen=True)
class RawNode:
    cid: CID
    raw: bytes

    @property
    def cumulative_size(self) -> int:
        return len(self.raw)


@dataclass(frozen=True)
class CborNode:
    cid: CID
    raw: bytes
    value: Any = field(compare=False)

    @property
    def cumulative_size(self) -> int:
        return len(self.raw)


@dataclass(frozen=True)
class OpaqueNode:
    cid: CID
    raw: bytes

    @property
    def cumulative_size(self) -> int:
        return len(self.raw)


Node = Union[ProtoNode, RawNode, CborNode, OpaqueNode]


# =============================================================================
# DAG service
# =============================================================================

class DagService:
    """Decodes nodes out of a per-request block store."""

    def __init__(self, store: TieredBlockStore):
        self.store = store

    def has(self, cid: CID) -> bool:
        return self.store.has(cid)

    def get(self, cid: CID) -> Node:
        raw = self.store.get(cid)
        codec = cid.codec.name

        if codec == DAG_PB:
            try:
                pb = decode_pbnode(raw)
            except DecodeError as exc:
                raise NodeDecodeError(str(cid), codec, str(exc)) from exc
            links = []
            for pl in pb.Links:
                try:
                    target = canonical_cid(CID.decode(pl.Hash))
                except (ValueError, KeyError) as exc:
                    raise NodeDecodeError(str(cid), codec, f"bad link hash: {exc}") from exc
                links.append(Link(name=pl.Name, cid=target, size=pl.Tsize))
            return ProtoNode(cid, raw, tuple(links), pb.Data)

        if codec == RAW:
            return RawNode(cid, raw)

        if codec == DAG_CBOR:
            try:
                value = decode_cbor(raw)
            except (DAGCBORDecodingError, ValueError) as exc:
                raise NodeDecodeError(str(cid), codec, str(exc)) from exc
            return CborNode(cid, raw, value)

        return OpaqueNode(cid, raw)

    def add(self, node: Node) -> None:
        """Store a synthesized node in the warm overlay."""
        self.store.put(node.cid, node.raw)

    def load_data_model(self, cid: CID) -> Any:
        """Data-model view of a block, as seen by selector evaluation."""
        node = self.get(cid)
        if isinstance(node, ProtoNode):
            view: Dict[str, Any] = {
                "Links": [{"Hash": l.cid, "Name": l.name, "Tsize": l.size} for l in node.links],
            }
            if node.data:
                view["Data"] = node.data
            return view
        if isinstance(node, CborNode):
            return node.value
        return node.raw


# =============================================================================
# File reader
# =============================================================================

class DagReader(io.RawIOBase):
    """Seekable reader over a UnixFS file tree or a raw block.

    Args:
        dag: Service the file's blocks are loaded from
        node: File root (``ProtoNode`` of type File/Raw, or ``RawNode``)
        max_depth: Deepest block level a read may load; None for no bound

    Raises:
        UnsupportedNodeError: ``node`` is not a file.
    """

    def __init__(self, dag: DagService, node: Node, max_depth: Optional[int] = None):
        super().__init__()
        self._dag = dag
        self._root = node
        self._max_depth = max_depth
        self._pos = 0
        self._size = self._node_size(node)

    def _node_size(self, node: Node) -> int:
        if isinstance(node, RawNode):
            return len(node.raw)
        if isinstance(node, ProtoNode):
            fs = node.unixfs()
            if fs.Type not in (UnixFSType.FILE, UnixFSType.RAW):
                raise UnsupportedNodeError(f"{node.cid} is a UnixFS {UnixFSType(fs.Type).name.lower()}, not a file")
            return unixfs_file_size(fs)
        raise UnsupportedNodeError(f"{node.cid} ({node.cid.codec.name}) is not a file")

    @property
    def size(self) -> int:
        return self._size

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            pos = offset
        elif whence == io.SEEK_CUR:
            pos = self._pos + offset
        elif whence == io.SEEK_END:
            pos = self._size + offset
        else:
            raise ValueError(f"invalid whence {whence}")
        if pos < 0:
            raise OSError(f"negative seek position {pos}")
        self._pos = pos
        return pos

    def readinto(self, buffer) -> int:
        end = min(self._pos + len(buffer), self._size)
        if self._pos >= end:
            return 0
        chunk = self._read_range(self._root, self._pos, end, 0)
        n = len(chunk)
        buffer[:n] = chunk
        self._pos += n
        return n

    def _read_range(self, node: Node, start: int, end: int, depth: int) -> bytes:
        if isinstance(node, RawNode):
            return node.raw[start:end]
        if not isinstance(node, ProtoNode):
            raise UnsupportedNodeError(f"{node.cid} ({node.cid.codec.name}) inside a file")

        fs = node.unixfs()
        if len(fs.blocksizes) != len(node.links):
            raise NodeDecodeError(
                str(node.cid), "unixfs",
                f"{len(node.links)} links but {len(fs.blocksizes)} block sizes",
            )

        parts: List[bytes] = []
        inline = fs.Data
        if start < len(inline):
            parts.append(inline[start:min(end, len(inline))])

        offset = len(inline)
        for link, block_size in zip(node.links, fs.blocksizes):
            child_start, child_end = offset, offset + block_size
            offset = child_end
            if child_end <= start or child_start >= end:
                continue
            if self._max_depth is not None and depth >= self._max_depth:
                raise TraversalDepthError(str(self._root.cid), self._max_depth)
            child = self._dag.get(link.cid)
            parts.append(self._read_range(
                child,
                max(start, child_start) - child_start,
                min(end, child_end) - child_start,
                depth + 1,
            ))
            if child_end >= end:
                break

        return b"".join(parts)


