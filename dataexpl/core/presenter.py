# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Presentation helpers: byte ranges, response content types, structural dumps.

These functions sit between the resolver and the HTTP layer.  They do not
touch the network; everything they need is already in the request's DAG.
"""

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from multiformats import CID

from dataexpl.core.dag import DagReader
from dataexpl.core.exceptions import DataExplError
from dataexpl.core.models import TraversalPolicy
from dataexpl.core.resolver import OCTET_STREAM, TypeResolver

logger = logging.getLogger(__name__)

__all__ = [
    "RangeNotSatisfiableError",
    "http_range",
    "read_body",
    "response_content_type",
    "DumpNode",
    "dump_structure",
]

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiableError(ValueError):
    """The requested byte range lies outside the content."""

    def __init__(self, header: str, size: int):
        self.header = header
        self.size = size
        super().__init__(f"range {header!r} not satisfiable for {size} bytes")


# =============================================================================
# Ranges and content types
# =============================================================================

def http_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Parse a single-range ``Range`` header.

    Returns ``(start, end)`` with ``end`` exclusive, or None when the whole
    body should be served (no header, multiple ranges, a header that is not a byte
    range, or a range whose last position precedes the first).

    Raises:
        RangeNotSatisfiableError: The range does not overlap the content.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header.strip())
    if match is None:
        return None

    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        # Suffix range: the final N bytes.
        length = int(last)
        if length == 0 or size == 0:
            raise RangeNotSatisfiableError(header, size)
        return max(size - length, 0), size

    start = int(first)
    if last and int(last) < start:
        return None
    if start >= size:
        raise RangeNotSatisfiableError(header, size)
    end = size if not last else min(int(last) + 1, size)
    return start, end


def read_body(reader: DagReader, byte_range: Optional[Tuple[int, int]]) -> bytes:
    """Read the whole requested body before any response is started."""
    if byte_range is None:
        reader.seek(0)
        return reader.read()
    start, end = byte_range
    reader.seek(start)
    return reader.read(end - start)


def response_content_type(ctype: str) -> str:
    """Normalize a detected type for the ``Content-Type`` header."""
    if not ctype:
        return OCTET_STREAM
    if ctype.startswith("text/html;"):
        return "text/html"
    return ctype


# =============================================================================
# Structural dump
# =============================================================================

@dataclass
class DumpNode:
    """One rendered value of a structured node.

    ``kind`` is one of map, list, null, bool, int, float, string, bytes,
    link or truncated.  Containers carry ``entries``; links carry the
    navigation targets and the resolver's description.
    """

    kind: str
    text: str = ""
    entries: List[Tuple[str, "DumpNode"]] = field(default_factory=list)
    cid: str = ""
    href: str = ""
    car_href: str = ""
    check_href: str = ""
    full: bool = True


class _Dumper:
    def __init__(self, resolver: TypeResolver, policy: TraversalPolicy):
        self._resolver = resolver
        self._policy = policy
        self._described = 0

    def dump(self, value: Any, path: str, depth: int) -> DumpNode:
        if depth > self._policy.max_depth:
            return DumpNode("truncated", text="...")

        if isinstance(value, dict):
            return DumpNode("map", entries=[
                (str(k), self.dump(v, f"{path}{k}/", depth + 1)) for k, v in value.items()
            ])
        if isinstance(value, list):
            return DumpNode("list", entries=[
                (str(i), self.dump(v, f"{path}{i}/", depth + 1)) for i, v in enumerate(value)
            ])
        if value is None:
            return DumpNode("null", text="NULL")
        if isinstance(value, bool):
            return DumpNode("bool", text="true" if value else "false")
        if isinstance(value, int):
            return DumpNode("int", text=str(value))
        if isinstance(value, float):
            return DumpNode("float", text=f"{value:f}")
        if isinstance(value, str):
            return DumpNode("string", text=value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return DumpNode("bytes", text=bytes(value).hex())
        if isinstance(value, CID):
            return self._link(value, path)
        raise DataExplError(f"cannot render value of type {type(value).__name__} at {path}")

    def _link(self, cid: CID, path: str) -> DumpNode:
        name = posixpath.basename(path.rstrip("/"))
        if self._described < self._policy.max_width:
            self._described += 1
            desc = self._resolver.describe_link(cid, name)
            text, full = desc.text, desc.full
        else:
            logger.debug("Link description budget spent, deferring %s", cid)
            text, full = cid.codec.name.upper(), False

        node = DumpNode(
            "link",
            text=text,
            cid=str(cid),
            href=path,
            car_href=path.replace("/view", "/car", 1),
            full=full,
        )
        if not full:
            node.check_href = f"{path}?filename={name}"
        return node


def dump_structure(value: Any, path: str, resolver: TypeResolver, policy: TraversalPolicy) -> DumpNode:
    """Render a decoded structured value as a bounded tree.

    Args:
        value: Decoded DAG-CBOR value
        path: URL path of ``value``; child paths append key or index
        resolver: Describes followed links
        policy: At most ``max_width`` links are described eagerly and
            nesting stops at ``max_depth``
    """
    if not path.endswith("/"):
        path += "/"
    return _Dumper(resolver, policy).dump(value, path, 0)
