# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Node classification and bounded-cost link descriptions.

The resolver answers two questions about a node:

1. *What is it?*  :meth:`TypeResolver.classify` maps a node to one of the
   :class:`~dataexpl.core.models.NodeDescriptor` variants.  It looks only at
   the node's own bytes (plus an optional filename), so the same input
   always yields the same descriptor.
2. *How should a link to it read in a listing?*
   :meth:`TypeResolver.describe_link` produces a one-line description,
   marked tentative when the blocks needed to decide were not retrieved
   or the content lies deeper than ``policy.max_depth``.

Directory listings classify at most ``policy.max_width`` children eagerly;
the remainder are returned deferred.
"""

import logging
import mimetypes
from typing import Callable, Iterator, List, Optional, Tuple

import puremagic
from multiformats import CID

from dataexpl.core.dag import (
    CborNode,
    DagReader,
    DagService,
    Link,
    Node,
    ProtoNode,
    RawNode,
)
from dataexpl.core.exceptions import (
    BlockNotFoundError,
    DataExplError,
    TraversalDepthError,
    UnsupportedNodeError,
)
from dataexpl.core.models import (
    ContainerDescriptor,
    DirEntry,
    LeafDescriptor,
    LinkDescription,
    NodeDescriptor,
    NodeKind,
    OpaqueDescriptor,
    TraversalPolicy,
)
from dataexpl.core.unixfs import UnixFSType, unixfs_file_size
from dataexpl.core.units import size_str

logger = logging.getLogger(__name__)

__all__ = [
    "SNIFF_LENGTH",
    "sniff_content_type",
    "extension_content_type",
    "TypeResolver",
]

# Bytes examined when sniffing a content type.
SNIFF_LENGTH = 3072

OCTET_STREAM = "application/octet-stream"
TEXT_PLAIN = "text/plain; charset=utf-8"
TEXT_HTML = "text/html; charset=utf-8"

_HTML_PREFIXES = (b"<!doctype html", b"<html", b"<head", b"<body")

_TENTATIVE_BY_CODEC = {
    "dag-pb": "DAG-PB",
    "raw": "RAW",
    "dag-cbor": "DAG-CBOR",
}

Sniffer = Callable[[bytes], str]


def _as_text(head: bytes) -> Optional[str]:
    # A multi-byte sequence may be cut at the end of the sniff window.
    for cut in range(4):
        try:
            return head[:len(head) - cut].decode("utf-8")
        except UnicodeDecodeError:
            continue
    return None


def sniff_content_type(head: bytes) -> str:
    """Detect a MIME type from the first bytes of a file.

    Binary signatures come from ``puremagic``.  Text without a signature is
    reported as HTML when it opens like a document, otherwise plain UTF-8
    text.  Everything else is ``application/octet-stream``.
    """
    if not head:
        return TEXT_PLAIN

    try:
        detected = puremagic.from_string(head, mime=True)
    except puremagic.PureError:
        detected = ""
    if detected:
        return detected

    text = _as_text(head)
    if text is None or any(ord(c) < 32 and c not in "\t\n\r\f" for c in text):
        return OCTET_STREAM
    if head.lstrip().lower().startswith(_HTML_PREFIXES):
        return TEXT_HTML
    return TEXT_PLAIN


def extension_content_type(filename: str) -> str:
    """MIME type implied by a filename's extension, or ``""``."""
    if not filename:
        return ""
    ctype, _ = mimetypes.guess_type(filename, strict=False)
    return ctype or ""


class TypeResolver:
    """Classifies nodes and describes links over one request's DAG.

    Args:
        dag: Node service backed by the request's tiered store
        policy: Depth and width bounds
        sniffer: Content sniffing function, ``bytes -> MIME type``
    """

    def __init__(self, dag: DagService, policy: TraversalPolicy, sniffer: Sniffer = sniff_content_type):
        self.dag = dag
        self.policy = policy
        self._sniff = sniffer

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, node: Node, filename: str = "") -> NodeDescriptor:
        """Map a node to its descriptor from its own bytes only.

        Content type for multi-block files is taken from ``filename`` alone;
        single-block files are sniffed from their inline bytes.
        """
        if isinstance(node, ProtoNode):
            fs = node.unixfs()
            if fs.Type == UnixFSType.DIRECTORY:
                return ContainerDescriptor(NodeKind.DIRECTORY, node.cumulative_size, len(node.links))
            if fs.Type == UnixFSType.HAMT_SHARD:
                return ContainerDescriptor(NodeKind.SHARDED_DIRECTORY, node.cumulative_size, len(node.links))
            if fs.Type == UnixFSType.SYMLINK:
                return LeafDescriptor(NodeKind.SYMLINK, len(fs.Data))
            if fs.Type in (UnixFSType.FILE, UnixFSType.RAW):
                ctype = extension_content_type(filename)
                if not ctype and not node.links:
                    ctype = self._sniff(fs.Data[:SNIFF_LENGTH])
                return LeafDescriptor(NodeKind.FILE, unixfs_file_size(fs), ctype)
            return OpaqueDescriptor(NodeKind.UNKNOWN, node.cumulative_size, f"unknown ufs type {fs.Type}")

        if isinstance(node, RawNode):
            ctype = extension_content_type(filename) or self._sniff(node.raw[:SNIFF_LENGTH])
            return LeafDescriptor(NodeKind.RAW_FILE, len(node.raw), ctype)

        if isinstance(node, CborNode):
            return LeafDescriptor(NodeKind.STRUCTURED_DATA, len(node.raw))

        return OpaqueDescriptor(NodeKind.UNKNOWN, len(node.raw), f"UNK:0x{node.cid.codec.code:x}")

    def content_type(self, reader: DagReader, filename: str = "") -> str:
        """Extension lookup first, then sniffing.  Leaves ``reader`` at 0.

        Raises:
            DataExplError: The reader could not be repositioned.
        """
        ctype = extension_content_type(filename)
        if ctype:
            return ctype

        head = reader.read(SNIFF_LENGTH)
        ctype = self._sniff(head)
        try:
            reader.seek(0)
        except OSError as exc:
            raise DataExplError(f"seeking back after content sniffing: {exc}") from exc
        return ctype

    # ------------------------------------------------------------------
    # Link descriptions
    # ------------------------------------------------------------------

    def describe_link(self, cid: CID, name: str = "") -> LinkDescription:
        """One-line description of the node ``cid`` points at.

        Raises:
            UnsupportedNodeError: The node is a UnixFS type that cannot be
                described.
            NodeDecodeError: The block does not decode with its codec.
        """
        codec = cid.codec.name
        if not self.dag.has(cid):
            tentative = _TENTATIVE_BY_CODEC.get(codec, f"UNK:0x{cid.codec.code:x}")
            return LinkDescription(tentative, full=False)

        node = self.dag.get(cid)

        if isinstance(node, ProtoNode):
            fs = node.unixfs()
            if fs.Type == UnixFSType.DIRECTORY:
                return LinkDescription(f"DIR ({len(node.links)} entries)", full=True)
            if fs.Type == UnixFSType.HAMT_SHARD:
                return LinkDescription(f"HAMT ({len(node.links)} links)", full=True)
            if fs.Type == UnixFSType.SYMLINK:
                return LinkDescription("LINK", full=True)
            if fs.Type not in (UnixFSType.FILE, UnixFSType.RAW):
                raise UnsupportedNodeError(f"unknown ufs type {fs.Type}")
            try:
                ctype = self.content_type(DagReader(self.dag, node, self.policy.max_depth), name)
            except (TraversalDepthError, BlockNotFoundError) as exc:
                logger.debug("Deferring type check of %s: %s", cid, exc)
                return LinkDescription("FILE (pb,?)", full=False)
            return LinkDescription(f"FILE (pb,{ctype})", full=True)

        if isinstance(node, RawNode):
            ctype = self.content_type(DagReader(self.dag, node), name)
            return LinkDescription(f"FILE (raw,{ctype})", full=True)

        if isinstance(node, CborNode):
            return LinkDescription("DAG-CBOR", full=True)

        return LinkDescription(f"UNK:0x{cid.codec.code:x}", full=True)

    # ------------------------------------------------------------------
    # Directory listings
    # ------------------------------------------------------------------

    def directory_links(self, node: ProtoNode) -> Iterator[Tuple[str, Link]]:
        """Entries of a plain or HAMT-sharded directory, in link order.

        Each entry comes with its path below ``node``, e.g. ``Links/3/Hash``.
        Shard links carry a fixed-width hex prefix.  Sub-shards that were
        retrieved are expanded in place (up to ``policy.max_depth`` levels);
        those that were not are listed as themselves.
        """
        fs = node.unixfs()
        if fs.Type != UnixFSType.HAMT_SHARD:
            for i, link in enumerate(node.links):
                yield f"Links/{i}/Hash", link
            return
        yield from self._shard_links(node, fs.fanout, 0, "")

    def _shard_links(self, node: ProtoNode, fanout: int, depth: int, prefix: str) -> Iterator[Tuple[str, Link]]:
        width = len(format(max(fanout, 1) - 1, "X"))
        for i, link in enumerate(node.links):
            path = f"{prefix}Links/{i}/Hash"
            if len(link.name) > width:
                yield path, Link(name=link.name[width:], cid=link.cid, size=link.size)
                continue
            if depth >= self.policy.max_depth or not self.dag.has(link.cid):
                yield path, link
                continue
            child = self.dag.get(link.cid)
            if not isinstance(child, ProtoNode):
                yield path, link
                continue
            yield from self._shard_links(child, fanout, depth + 1, path + "/")

    def list_directory(self, node: ProtoNode) -> List[DirEntry]:
        """Directory entries; only the first ``policy.max_width`` are described."""
        entries: List[DirEntry] = []
        for i, (path, link) in enumerate(self.directory_links(node)):
            size = size_str(link.size)
            if i >= self.policy.max_width:
                entries.append(DirEntry(link.name, size, link.cid, path=path, deferred=True, full=False))
                continue
            try:
                desc = self.describe_link(link.cid, link.name)
            except DataExplError as exc:
                logger.info("Describing %s (%s) failed: %s", link.name, link.cid, exc)
                entries.append(DirEntry(link.name, size, link.cid, path=path, desc=f"?? ({exc})"))
                continue
            entries.append(DirEntry(link.name, size, link.cid, path=path, desc=desc.text, full=desc.full))
        return entries
