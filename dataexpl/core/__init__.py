# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Retrieval and lazy DAG materialization core.

Selector compilation, retrieval negotiation, verified block stores,
node classification and presentation helpers.
"""

from .exceptions import (
    ArchiveIntegrityError,
    BlockNotFoundError,
    DataExplError,
    ExportError,
    NegotiationError,
    NodeDecodeError,
    RetrievalTimeoutError,
    SelectorError,
    TraversalDepthError,
    UnsupportedNodeError,
)
from .explorer import Explorer, ExploreRequest, dag_from_archive
from .models import TraversalPolicy
from .negotiator import RetrievalNegotiator
from .resolver import TypeResolver

__all__ = [
    # Exceptions
    "DataExplError",
    "SelectorError",
    "NegotiationError",
    "RetrievalTimeoutError",
    "ExportError",
    "ArchiveIntegrityError",
    "BlockNotFoundError",
    "TraversalDepthError",
    "NodeDecodeError",
    "UnsupportedNodeError",
    # Orchestration
    "Explorer",
    "ExploreRequest",
    "dag_from_archive",
    "RetrievalNegotiator",
    "TypeResolver",
    "TraversalPolicy",
]
