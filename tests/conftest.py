# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared fixtures for the data explorer test suite.

Provides a small UnixFS tree (directory with a text file, a PNG, a
two-chunk file and a symlink), the default traversal policy, and a
FakeNode holding the tree.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from dataexpl.core.dag import ProtoNode, RawNode
from dataexpl.core.models import TraversalPolicy

from .helpers import PNG_BYTES, FakeNode, chunked_file, directory, file_node, raw_node, symlink


@dataclass
class SampleTree:
    root: ProtoNode
    readme: ProtoNode
    image: RawNode
    chunk_a: RawNode
    chunk_b: RawNode
    big: ProtoNode
    link: ProtoNode

    @property
    def nodes(self):
        return (self.root, self.readme, self.image, self.chunk_a, self.chunk_b, self.big, self.link)


# =========================================================================
# DAGs
# =========================================================================

@pytest.fixture
def policy() -> TraversalPolicy:
    return TraversalPolicy(max_depth=15, max_width=16)


@pytest.fixture
def sample_tree() -> SampleTree:
    """Directory ``readme.txt``, ``image.png``, ``big.bin`` and ``latest``.

    ``big.bin`` is a two-chunk file of 26 bytes: ``a`` * 10 + ``b`` * 16.
    """
    readme = file_node(b"hello explorer\n")
    image = raw_node(PNG_BYTES)
    chunk_a = raw_node(b"a" * 10)
    chunk_b = raw_node(b"b" * 16)
    big = chunked_file(chunk_a, chunk_b)
    link = symlink("readme.txt")
    root = directory([
        ("readme.txt", readme),
        ("image.png", image),
        ("big.bin", big),
        ("latest", link),
    ])
    return SampleTree(root, readme, image, chunk_a, chunk_b, big, link)


@pytest.fixture
def fake_node(sample_tree: SampleTree) -> FakeNode:
    return FakeNode(*sample_tree.nodes)
