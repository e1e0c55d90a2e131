# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Data explorer exceptions.

Every error raised by the core derives from :class:`DataExplError`.  The
HTTP boundary turns any of them into a server error carrying the message.
"""

from typing import Optional


class DataExplError(Exception):
    """Base exception for retrieval and DAG exploration errors."""
    pass


class SelectorError(DataExplError):
    """A path expression could not be compiled into a selector."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"failed to parse path-selector {path!r}: {reason}")


class NegotiationError(DataExplError):
    """Retrieval negotiation reached a failed terminal state."""

    def __init__(self, code: str, message: str, state: str):
        self.code = code
        self.message = message
        self.state = state
        super().__init__(message)

    @classmethod
    def offer_failed(cls, reason: str) -> "NegotiationError":
        return cls(code="OFFER_FAILED", message=f"offer: {reason}", state="ERRORED")

    @classmethod
    def offer_error(cls, reason: str) -> "NegotiationError":
        return cls(code="OFFER_ERROR", message=f"offer error: {reason}", state="REJECTED")

    @classmethod
    def price_exceeded(cls, max_price: int, min_price: int, min_price_fil: str) -> "NegotiationError":
        return cls(
            code="PRICE_EXCEEDED",
            message=f"failed to find offer satisfying maxPrice: {max_price} (min {min_price}, {min_price_fil})",
            state="REJECTED",
        )

    @classmethod
    def submit_failed(cls, reason: str) -> "NegotiationError":
        return cls(code="SUBMIT_FAILED", message=f"error setting up retrieval: {reason}", state="ERRORED")

    @classmethod
    def rejected(cls, message: str) -> "NegotiationError":
        return cls(code="DEAL_REJECTED", message=f"Retrieval Proposal Rejected: {message}", state="REJECTED")

    @classmethod
    def not_found(cls, message: str) -> "NegotiationError":
        return cls(code="DEAL_NOT_FOUND", message=f"Retrieval Error: {message}", state="NOT_FOUND")

    @classmethod
    def errored(cls, message: str) -> "NegotiationError":
        return cls(code="DEAL_ERRORED", message=f"Retrieval Error: {message}", state="ERRORED")


class RetrievalTimeoutError(DataExplError):
    """The retrieval deadline expired before a terminal deal event."""

    def __init__(self, deal_id: Optional[int] = None):
        self.deal_id = deal_id
        super().__init__("Retrieval Timed Out")


class NodeAPIError(DataExplError):
    """A node API call failed or the connection to the node broke."""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        super().__init__(f"{method}: {message}")


class ExportError(DataExplError):
    """The node failed to export the retrieved archive."""
    pass


class ArchiveIntegrityError(DataExplError):
    """The retrieved archive is malformed or fails verification."""

    @classmethod
    def root_count(cls, count: int) -> "ArchiveIntegrityError":
        return cls(f"wanted exactly one root, got {count}")

    @classmethod
    def truncated(cls, offset: int, wanted: int, available: int) -> "ArchiveIntegrityError":
        return cls(
            f"truncated archive section at offset {offset}: "
            f"wanted {wanted} bytes, {available} available"
        )

    @classmethod
    def corrupt(cls, offset: int, reason: str) -> "ArchiveIntegrityError":
        return cls(f"corrupt archive section at offset {offset}: {reason}")

    @classmethod
    def bad_header(cls, reason: str) -> "ArchiveIntegrityError":
        return cls(f"invalid archive header: {reason}")

    @classmethod
    def hash_mismatch(cls, cid: str) -> "ArchiveIntegrityError":
        return cls(f"block {cid} does not match its content hash")

    @classmethod
    def too_large(cls, size: int, limit: int) -> "ArchiveIntegrityError":
        return cls(f"archive exceeds maximum size ({size} > {limit} bytes)")


class BlockNotFoundError(DataExplError):
    """A block is not held by the store."""

    def __init__(self, cid: str):
        self.cid = cid
        super().__init__(f"block not found: {cid}")


class TraversalDepthError(DataExplError):
    """Reading a node would descend past the configured depth bound."""

    def __init__(self, cid: str, max_depth: int):
        self.cid = cid
        self.max_depth = max_depth
        super().__init__(f"reading {cid} needs deeper check (depth limit {max_depth})")


class NodeDecodeError(DataExplError):
    """A block could not be decoded with the codec its CID declares."""

    def __init__(self, cid: str, codec: str, reason: str):
        self.cid = cid
        self.codec = codec
        super().__init__(f"decoding {codec} node {cid}: {reason}")


class UnsupportedNodeError(DataExplError):
    """The node kind cannot be served directly."""
    pass
