# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Data models for retrieval negotiation and node classification.

Defines:
- Retrieval entities: QueryOffer, RetrievalOrder, RetrievalEvent, ExportRef
- Deal status, client event and storage deal state enumerations
- TraversalPolicy: the depth/width bounds for preview traversals
- Resolved node descriptors and directory entries
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple, Union

from multiformats import CID


# =============================================================================
# Deal status / client events
# =============================================================================

class DealStatus(IntEnum):
    """Retrieval deal status codes as reported by the node."""

    New = 0
    Unsealing = 1
    Unsealed = 2
    WaitForAcceptance = 3
    PaymentChannelCreating = 4
    PaymentChannelAddingFunds = 5
    Accepted = 6
    FundsNeededUnseal = 7
    Failing = 8
    Rejected = 9
    FundsNeeded = 10
    SendFunds = 11
    SendFundsLastPayment = 12
    Ongoing = 13
    FundsNeededLastPayment = 14
    Completed = 15
    DealNotFound = 16
    Errored = 17
    BlocksComplete = 18
    Finalizing = 19
    Completing = 20
    CheckComplete = 21
    CheckFunds = 22
    InsufficientFunds = 23
    PaymentChannelAllocatingLane = 24
    Cancelling = 25
    Cancelled = 26
    RetryLegacy = 27
    WaitForAcceptanceLegacy = 28
    ClientWaitingForLastBlocks = 29
    PaymentChannelAddingInitialFunds = 30
    ErroredRetryingConnection = 31
    RetryingConnection = 32
    WaitingForConnection = 33
    ProviderWaitingForFunds = 34


CLIENT_EVENTS: Tuple[str, ...] = (
    "ClientEventOpen",
    "ClientEventPaymentChannelErrored",
    "ClientEventPaymentChannelCreateInitiated",
    "ClientEventPaymentChannelReady",
    "ClientEventAllocateLaneErrored",
    "ClientEventPaymentChannelAddingFunds",
    "ClientEventDealProposed",
    "ClientEventDealRejected",
    "ClientEventDealNotFound",
    "ClientEventDealAccepted",
    "ClientEventProviderCancelled",
    "ClientEventUnknownResponseReceived",
    "ClientEventLastPaymentRequested",
    "ClientEventAllBlocksReceived",
    "ClientEventPaymentRequested",
    "ClientEventUnsealPaymentRequested",
    "ClientEventBlocksReceived",
    "ClientEventSendFunds",
    "ClientEventFundsExpended",
    "ClientEventBadPaymentRequested",
    "ClientEventCreateVoucherFailed",
    "ClientEventWriteDealProposalErrored",
    "ClientEventWriteDealPaymentErrored",
    "ClientEventComplete",
    "ClientEventDataTransferError",
    "ClientEventCancelComplete",
    "ClientEventEarlyTermination",
    "ClientEventCompleteVerified",
    "ClientEventLaneAllocated",
    "ClientEventVoucherShortfall",
    "ClientEventRecheckFunds",
    "ClientEventCancel",
    "ClientEventWaitForLastBlocks",
    "ClientEventPaymentChannelSkip",
    "ClientEventPaymentNotSent",
    "ClientEventBlockstoreFinalized",
    "ClientEventFinalizeBlockstoreErrored",
)


def event_name(event: Optional[int]) -> str:
    """Readable client event name with the enumeration prefix stripped."""
    if event is None:
        return "New"
    if 0 <= event < len(CLIENT_EVENTS):
        return CLIENT_EVENTS[event][len("ClientEvent"):]
    return f"Event{event}"


def status_name(status: int) -> str:
    """Readable deal status name with the enumeration prefix stripped."""
    try:
        return DealStatus(status).name
    except ValueError:
        return f"Status{status}"


# Storage deal states, indexed by code.
STORAGE_DEAL_STATES: Tuple[str, ...] = (
    "StorageDealUnknown",
    "StorageDealProposalNotFound",
    "StorageDealProposalRejected",
    "StorageDealProposalAccepted",
    "StorageDealStaged",
    "StorageDealSealing",
    "StorageDealFinalizing",
    "StorageDealActive",
    "StorageDealExpired",
    "StorageDealSlashed",
    "StorageDealRejecting",
    "StorageDealFailing",
    "StorageDealFundsReserved",
    "StorageDealCheckForAcceptance",
    "StorageDealValidating",
    "StorageDealAcceptWait",
    "StorageDealStartDataTransfer",
    "StorageDealTransferring",
    "StorageDealWaitingForData",
    "StorageDealVerifyData",
    "StorageDealReserveProviderFunds",
    "StorageDealReserveClientFunds",
    "StorageDealProviderFunding",
    "StorageDealClientFunding",
    "StorageDealPublish",
    "StorageDealPublishing",
    "StorageDealError",
    "StorageDealProviderTransferAwaitRestart",
    "StorageDealClientTransferRestart",
    "StorageDealAwaitingPreCommit",
)

STORAGE_DEAL_ACTIVE = STORAGE_DEAL_STATES.index("StorageDealActive")


def storage_deal_state_name(state: int) -> str:
    """Readable storage deal state with the enumeration prefix stripped."""
    if 0 <= state < len(STORAGE_DEAL_STATES):
        return STORAGE_DEAL_STATES[state][len("StorageDeal"):]
    return f"State{state}"


# =============================================================================
# Retrieval entities
# =============================================================================

@dataclass(frozen=True)
class ProviderInfo:
    """Network identity of a storage provider."""

    address: str
    peer_id: Optional[str]
    multiaddrs: Tuple[bytes, ...] = ()


@dataclass(frozen=True)
class QueryOffer:
    """A provider's quote for retrieving a root from a piece.

    Attributes:
        root: Data root CID
        piece: Piece CID holding the data
        size: Payload size in bytes
        min_price: Total minimum price in attoFIL
        error: Provider-side error text; empty when the offer is usable
    """

    root: CID
    piece: Optional[CID]
    size: int
    min_price: int
    unseal_price: int = 0
    payment_interval: int = 0
    payment_interval_increase: int = 0
    provider: str = ""
    provider_peer: Dict[str, Any] = field(default_factory=dict)
    error: str = ""

    def order(self, payer: str, selector: str, max_price: Optional[int]) -> "RetrievalOrder":
        """Build the retrieval order for this offer."""
        return RetrievalOrder(
            provider=self.provider,
            piece=self.piece,
            root=self.root,
            selector=selector,
            max_price=max_price,
            payer=payer,
            size=self.size,
            total=self.min_price,
            unseal_price=self.unseal_price,
            payment_interval=self.payment_interval,
            payment_interval_increase=self.payment_interval_increase,
            provider_peer=self.provider_peer,
        )


@dataclass(frozen=True)
class RetrievalOrder:
    """An immutable order for exactly one retrieval attempt.

    ``max_price`` of ``None`` means no price ceiling was applied.
    """

    provider: str
    piece: Optional[CID]
    root: CID
    selector: str
    max_price: Optional[int]
    payer: str
    size: int = 0
    total: int = 0
    unseal_price: int = 0
    payment_interval: int = 0
    payment_interval_increase: int = 0
    provider_peer: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalEvent:
    """A progress update from the retrieval event subscription."""

    deal_id: int
    status: int
    bytes_received: int = 0
    total_paid: int = 0
    message: str = ""
    event: Optional[int] = None


@dataclass(frozen=True)
class ExportRef:
    """Reference to a completed retrieval that can be exported."""

    root: CID
    deal_id: int


# =============================================================================
# Traversal policy
# =============================================================================

@dataclass(frozen=True)
class TraversalPolicy:
    """Depth and width bounds for preview traversals.

    Attributes:
        max_depth: Maximum recursion depth when type-checking nodes
        max_width: Number of directory children classified eagerly
    """

    max_depth: int = 15
    max_width: int = 16

    def __post_init__(self) -> None:
        if self.max_depth < 0:
            raise ValueError(f"max_depth must not be negative, got {self.max_depth}")
        if self.max_width < 0:
            raise ValueError(f"max_width must not be negative, got {self.max_width}")


# =============================================================================
# Node classification
# =============================================================================

class NodeKind(str, Enum):
    DIRECTORY = "Directory"
    SHARDED_DIRECTORY = "ShardedDirectory"
    FILE = "File"
    SYMLINK = "Symlink"
    RAW_FILE = "RawFile"
    STRUCTURED_DATA = "StructuredData"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ContainerDescriptor:
    """Directory or HAMT shard: carries its entry count."""

    kind: NodeKind
    size: int
    entries: int

    def summary(self) -> str:
        if self.kind == NodeKind.SHARDED_DIRECTORY:
            return f"HAMT ({self.entries} links)"
        return f"DIR ({self.entries} entries)"


@dataclass(frozen=True)
class LeafDescriptor:
    """File, raw file, symlink or structured data leaf.

    ``content_type`` is empty when it was not determined.
    """

    kind: NodeKind
    size: int
    content_type: str = ""

    def summary(self) -> str:
        if self.kind == NodeKind.SYMLINK:
            return "LINK"
        if self.kind == NodeKind.STRUCTURED_DATA:
            return "DAG-CBOR"
        if self.content_type:
            return f"FILE({self.content_type})"
        return "FILE"


@dataclass(frozen=True)
class OpaqueDescriptor:
    """A node whose codec or UnixFS type is not understood."""

    kind: NodeKind
    size: int
    codec: str

    def summary(self) -> str:
        return self.codec


NodeDescriptor = Union[ContainerDescriptor, LeafDescriptor, OpaqueDescriptor]


@dataclass(frozen=True)
class LinkDescription:
    """One-line description of a linked node.

    ``full`` is False when the description is tentative, i.e. the blocks
    needed to determine it were not retrieved.
    """

    text: str
    full: bool


@dataclass(frozen=True)
class DirEntry:
    """One row of a directory listing.

    ``path`` is the entry's location below the directory node, e.g.
    ``Links/3/Hash``, suitable for appending to the directory URL.
    """

    name: str
    size: str
    cid: CID
    path: str = ""
    desc: str = ""
    deferred: bool = False
    full: bool = True
