# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Selector specifications: construction, path compilation and evaluation.

A selector is a declarative description of which parts of a DAG to visit.
This module provides:

- The selector node types (:class:`Matcher`, :class:`ExploreFields`,
  :class:`ExploreIndex`, :class:`ExploreRange`, :class:`ExploreAll`,
  :class:`ExploreRecursive`, :class:`ExploreRecursiveEdge`,
  :class:`ExploreUnion`).
- :func:`path_to_selector`: compile a slash-delimited path into nested
  field explorations ending in a sub-selector.
- The policy selectors used by the explorer.  Every one of them is bounded
  by a :class:`~dataexpl.core.models.TraversalPolicy` except
  :func:`archive_selector`, which exports a complete sub-DAG.
- :func:`encode_selector` and :func:`decode_selector`: DAG-JSON wire
  form exchanged with the node.
- :func:`walk`: evaluate a selector against locally held blocks and
  report the blocks it loads, in visit order.

Wire form keys follow the IPLD selector schema short representation
(``.`` matcher, ``f`` fields, ``i`` index, ``r`` range, ``a`` all,
``R`` recursive, ``@`` recursive edge, ``|`` union).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from multiformats import CID

from dataexpl.core.exceptions import SelectorError
from dataexpl.core.models import TraversalPolicy

logger = logging.getLogger(__name__)

__all__ = [
    "Selector",
    "Matcher",
    "ExploreFields",
    "ExploreIndex",
    "ExploreRange",
    "ExploreAll",
    "ExploreRecursive",
    "ExploreRecursiveEdge",
    "ExploreUnion",
    "path_to_selector",
    "encode_selector",
    "decode_selector",
    "first_block_chain",
    "preview_selector",
    "file_selector",
    "archive_selector",
    "walk",
    "WalkResult",
]


# ======================================================================
# Selector nodes
# ======================================================================


@dataclass(frozen=True)
class Matcher:
    """Select the current node."""

    def to_node(self) -> Dict[str, Any]:
        return {".": {}}


@dataclass(frozen=True)
class ExploreFields:
    """Descend into named fields (map keys, or list indices as strings)."""

    fields: Tuple[Tuple[str, "Selector"], ...]

    def to_node(self) -> Dict[str, Any]:
        return {"f": {"f>": {name: sub.to_node() for name, sub in self.fields}}}


@dataclass(frozen=True)
class ExploreIndex:
    """Descend into one list position."""

    index: int
    next: "Selector"

    def to_node(self) -> Dict[str, Any]:
        return {"i": {"i": self.index, ">": self.next.to_node()}}


@dataclass(frozen=True)
class ExploreRange:
    """Descend into list positions ``start`` (inclusive) to ``end`` (exclusive)."""

    start: int
    end: int
    next: "Selector"

    def to_node(self) -> Dict[str, Any]:
        return {"r": {"^": self.start, "$": self.end, ">": self.next.to_node()}}


@dataclass(frozen=True)
class ExploreAll:
    """Descend into every child."""

    next: "Selector"

    def to_node(self) -> Dict[str, Any]:
        return {"a": {">": self.next.to_node()}}


@dataclass(frozen=True)
class ExploreRecursive:
    """Repeat ``sequence`` at every :class:`ExploreRecursiveEdge`.

    ``limit`` is the maximum number of times an edge is followed.  ``None``
    is unbounded and is only produced by :func:`archive_selector`.
    """

    limit: Optional[int]
    sequence: "Selector"

    def to_node(self) -> Dict[str, Any]:
        limit: Dict[str, Any] = {"none": {}} if self.limit is None else {"depth": self.limit}
        return {"R": {"l": limit, ":>": self.sequence.to_node()}}


@dataclass(frozen=True)
class ExploreRecursiveEdge:
    """Point at which the enclosing recursive sequence is re-applied."""

    def to_node(self) -> Dict[str, Any]:
        return {"@": {}}


@dataclass(frozen=True)
class ExploreUnion:
    """Apply every member selector to the same node."""

    members: Tuple["Selector", ...] = field(default_factory=tuple)

    def to_node(self) -> Dict[str, Any]:
        return {"|": [m.to_node() for m in self.members]}


Selector = Union[
    Matcher,
    ExploreFields,
    ExploreIndex,
    ExploreRange,
    ExploreAll,
    ExploreRecursive,
    ExploreRecursiveEdge,
    ExploreUnion,
]


def _fields(name: str, sub: Selector) -> ExploreFields:
    return ExploreFields(fields=((name, sub),))


# ======================================================================
# Path compilation
# ======================================================================

_INVALID_CHAR = re.compile("[\x00-\x1f\x7f￾￿]")


def path_to_selector(
    path: str,
    sub: Optional[Selector] = None,
    match_path: bool = False,
) -> Selector:
    """Compile a slash-delimited path into a selector.

    The result visits exactly the nodes along ``path`` and applies ``sub``
    (default :class:`Matcher`) at the end.  With ``match_path`` every node
    along the way is matched as well.

    Parameters
    ----------
    path : str
        Path such as ``"Links/3/Hash"``.  A leading or trailing slash is
        tolerated; an empty path selects the root.
    sub : Selector or None
        Selector applied at the path target.
    match_path : bool
        Also match the intermediate nodes.

    Raises
    ------
    SelectorError
        If the path is a bare ``/``, contains control characters, an empty
        interior segment, or a ``.``/``..`` segment.
    """
    if path == "/":
        raise SelectorError(path, "a standalone '/' is not a valid path")

    bad = _INVALID_CHAR.search(path)
    if bad is not None:
        raise SelectorError(path, f"path string contains invalid character at offset {bad.start()}")

    spec: Selector = sub if sub is not None else Matcher()
    if not path:
        return spec

    segments = path.split("/")
    last = len(segments) - 1
    for i in range(last, -1, -1):
        segment = segments[i]
        if segment == "":
            if i == 0 or i == last:
                continue
            raise SelectorError(path, f"invalid empty segment at position {i}")
        if segment in (".", ".."):
            raise SelectorError(path, f"unsupported path segment {segment!r} at position {i}")

        if match_path:
            spec = ExploreUnion((Matcher(), _fields(segment, spec)))
        else:
            spec = _fields(segment, spec)

    return spec


def encode_selector(spec: Selector) -> str:
    """Serialize a selector to its DAG-JSON wire form."""
    return json.dumps(spec.to_node(), sort_keys=True, separators=(",", ":"))


def _from_node(node: Any) -> Selector:
    if not isinstance(node, dict) or len(node) != 1:
        raise ValueError(f"selector node must be a single-key map, got {node!r}")
    (key, body), = node.items()
    if key == ".":
        return Matcher()
    if key == "f":
        return ExploreFields(tuple((name, _from_node(sub)) for name, sub in body["f>"].items()))
    if key == "i":
        return ExploreIndex(body["i"], _from_node(body[">"]))
    if key == "r":
        return ExploreRange(body["^"], body["$"], _from_node(body[">"]))
    if key == "a":
        return ExploreAll(_from_node(body[">"]))
    if key == "R":
        limit = body["l"]
        return ExploreRecursive(None if "none" in limit else limit["depth"], _from_node(body[":>"]))
    if key == "@":
        return ExploreRecursiveEdge()
    if key == "|":
        return ExploreUnion(tuple(_from_node(m) for m in body))
    raise ValueError(f"unknown selector key {key!r}")


def decode_selector(text: str) -> Selector:
    """Parse the wire form produced by :func:`encode_selector`.

    Raises:
        ValueError: The text is not a selector this module can build.
    """
    try:
        return _from_node(json.loads(text))
    except (KeyError, TypeError) as exc:
        raise ValueError(f"malformed selector: {exc}") from exc


# ======================================================================
# Policy selectors
# ======================================================================


def first_block_chain(policy: TraversalPolicy) -> Selector:
    """Follow ``Links/0/Hash`` recursively, up to ``policy.max_depth``.

    Retrieves the blocks holding the first bytes of a file, which is all
    content sniffing needs.
    """
    return ExploreRecursive(
        policy.max_depth,
        ExploreUnion((
            Matcher(),
            _fields("Links", ExploreIndex(0, _fields("Hash", ExploreRecursiveEdge()))),
        )),
    )


def preview_selector(policy: TraversalPolicy) -> Selector:
    """Root plus the first ``policy.max_width`` children, each type-checkable."""
    return ExploreUnion((
        Matcher(),
        _fields(
            "Links",
            ExploreRange(0, policy.max_width, _fields("Hash", first_block_chain(policy))),
        ),
    ))


def file_selector(policy: TraversalPolicy) -> Selector:
    """Every block of a file body, up to ``policy.max_depth`` levels."""
    return ExploreRecursive(
        policy.max_depth,
        ExploreUnion((Matcher(), ExploreAll(ExploreRecursiveEdge()))),
    )


def archive_selector() -> Selector:
    """Every reachable block.  Used only for full archive export."""
    return ExploreRecursive(
        None,
        ExploreUnion((Matcher(), ExploreAll(ExploreRecursiveEdge()))),
    )


# ======================================================================
# Evaluation
# ======================================================================


@dataclass
class WalkResult:
    """Outcome of evaluating a selector.

    Attributes
    ----------
    blocks : list[CID]
        Every block loaded, in first-visit order, without duplicates.
    matches : list[tuple[str, CID]]
        ``(path, block)`` for every matched node that is a whole block.
    """

    blocks: List[CID] = field(default_factory=list)
    matches: List[Tuple[str, CID]] = field(default_factory=list)

    @property
    def first_match(self) -> Optional[CID]:
        return self.matches[0][1] if self.matches else None


# Loader: CID -> data-model value of the block (dict/list/scalar/bytes).
Loader = Callable[[CID], Any]

# Recursion context: (sequence, edges left or None for unbounded).
_Recursion = Optional[Tuple[Selector, Optional[int]]]


def _children(node: Any) -> Iterator[Tuple[str, Any]]:
    if isinstance(node, dict):
        for key, value in node.items():
            yield str(key), value
    elif isinstance(node, list):
        for idx, value in enumerate(node):
            yield str(idx), value


def _field(node: Any, name: str) -> Any:
    if isinstance(node, dict):
        return node.get(name)
    if isinstance(node, list) and name.isdigit():
        idx = int(name)
        if idx < len(node):
            return node[idx]
    return None


class _Walker:
    def __init__(self, load: Loader) -> None:
        self._load = load
        self._seen: set = set()
        self.result = WalkResult()

    def load(self, cid: CID) -> Any:
        if cid not in self._seen:
            self._seen.add(cid)
            self.result.blocks.append(cid)
        return self._load(cid)

    def edge(self, rec: _Recursion) -> Optional[Tuple[Selector, _Recursion]]:
        """Sequence to re-apply at a recursive edge, or None when exhausted."""
        if rec is None:
            raise ValueError("recursive edge outside of a recursive selector")
        sequence, left = rec
        if left is not None and left <= 0:
            return None
        return sequence, (sequence, None if left is None else left - 1)

    def descend(self, sel: Selector, value: Any, path: str, rec: _Recursion) -> None:
        if isinstance(sel, ExploreRecursiveEdge):
            # Resolve the edge first so an exhausted limit never loads the link.
            followed = self.edge(rec)
            if followed is None:
                return
            sel, rec = followed
        if isinstance(value, CID):
            self.visit(sel, self.load(value), path, value, rec)
        else:
            self.visit(sel, value, path, None, rec)

    def visit(self, sel: Selector, node: Any, path: str, block: Optional[CID], rec: _Recursion) -> None:
        if isinstance(sel, Matcher):
            if block is not None:
                self.result.matches.append((path, block))
        elif isinstance(sel, ExploreUnion):
            for member in sel.members:
                self.visit(member, node, path, block, rec)
        elif isinstance(sel, ExploreFields):
            for name, sub in sel.fields:
                child = _field(node, name)
                if child is not None:
                    self.descend(sub, child, f"{path}/{name}", rec)
        elif isinstance(sel, ExploreIndex):
            if isinstance(node, list) and 0 <= sel.index < len(node):
                self.descend(sel.next, node[sel.index], f"{path}/{sel.index}", rec)
        elif isinstance(sel, ExploreRange):
            if isinstance(node, list):
                for idx in range(max(sel.start, 0), min(sel.end, len(node))):
                    self.descend(sel.next, node[idx], f"{path}/{idx}", rec)
        elif isinstance(sel, ExploreAll):
            for name, child in _children(node):
                self.descend(sel.next, child, f"{path}/{name}", rec)
        elif isinstance(sel, ExploreRecursive):
            self.visit(sel.sequence, node, path, block, (sel.sequence, sel.limit))
        elif isinstance(sel, ExploreRecursiveEdge):
            followed = self.edge(rec)
            if followed is not None:
                self.visit(followed[0], node, path, block, followed[1])
        else:
            raise TypeError(f"unknown selector node {sel!r}")


def walk(spec: Selector, root: CID, load: Loader) -> WalkResult:
    """Evaluate ``spec`` starting at the block ``root``.

    Links (CID values) met while exploring are loaded transparently through
    ``load``, so paths cross block boundaries the same way they do on the
    provider side.  Exceptions raised by ``load`` propagate.
    """
    walker = _Walker(load)
    walker.visit(spec, walker.load(root), "", root, None)
    logger.debug(
        "Selector walk from %s loaded %d blocks, %d matches",
        root, len(walker.result.blocks), len(walker.result.matches),
    )
    return walker.result
