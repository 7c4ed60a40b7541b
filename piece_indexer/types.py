"""Piece Indexer Types.

Data structures shared by the IPNI chain walker, the persistence layer and
the query API.

Walker phases: IDLE, WALKING
Invariants enforced by construction.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol


class WalkPhase(Enum):
    """Phase of a provider's advertisement walk.

    IDLE: no walk in progress (head and tail unset)
    WALKING: tail is the next advertisement to fetch
    """
    IDLE = "IDLE"
    WALKING = "WALKING"


class InvariantViolation(Exception):
    """Raised when walker state invariant violated."""
    pass


@dataclass(frozen=True)
class ProviderInfo:
    """IPNI's current view of an index provider."""
    provider_address: str
    last_advertisement_cid: str


@dataclass(frozen=True)
class WalkerState:
    """Per-provider walk cursor.

    Invariants (enforced in __post_init__):
    - head and tail are both set (WALKING) or both unset (IDLE)
    - counters are never negative

    last_head is the head of the most recently completed walk. It is
    carried alongside either phase and acts as the watermark below which
    the chain has already been processed.
    """
    head: Optional[str] = None
    tail: Optional[str] = None
    last_head: Optional[str] = None
    status: str = ""
    entries_not_retrievable: int = 0
    ads_missing_piece_cid: int = 0

    def __post_init__(self):
        """Validate walker state invariants."""
        if (self.head is None) != (self.tail is None):
            raise InvariantViolation(
                f"head and tail must be set together, got head={self.head} tail={self.tail}"
            )
        if self.entries_not_retrievable < 0 or self.ads_missing_piece_cid < 0:
            raise InvariantViolation(
                f"Counters must not be negative: entries_not_retrievable={self.entries_not_retrievable}, "
                f"ads_missing_piece_cid={self.ads_missing_piece_cid}"
            )

    @property
    def phase(self) -> WalkPhase:
        return WalkPhase.WALKING if self.tail is not None else WalkPhase.IDLE


@dataclass(frozen=True)
class IndexEntry:
    """One sampled (piece, payload) pair extracted from an advertisement."""
    payload_cid: str
    piece_cid: Optional[str] = None


@dataclass(frozen=True)
class DealInfo:
    """Deal descriptor carried in graphsync transport metadata."""
    piece_cid: str
    verified_deal: bool = False
    fast_retrieval: bool = False


@dataclass(frozen=True)
class AdvertisementMetadata:
    """Decoded advertisement metadata."""
    protocol: str
    deal: Optional[DealInfo] = None


@dataclass(frozen=True)
class AdvertisedPayload:
    """What a single advertisement contributes to the index."""
    previous_advertisement_cid: Optional[str] = None
    piece_cid: Optional[str] = None
    payload_cid: Optional[str] = None
    entries_fetch_error: bool = False


@dataclass(frozen=True)
class StepResult:
    """Outcome of processing one advertisement.

    finished: the walk reached its target, nothing left to do for now
    failed: a fetch or decode error occurred, new_state records the reason
    neither: more steps remain
    """
    new_state: Optional[WalkerState] = None
    index_entry: Optional[IndexEntry] = None
    finished: bool = False
    failed: bool = False


@dataclass
class StepOutcome:
    """Result of walk_one_step, with the state the next step can reuse."""
    walker_state: Optional[WalkerState] = None
    finished: bool = False
    failed: bool = False


class Repository(Protocol):
    """Persistence contract consumed by the chain walker and query API."""

    def get_walker_state(self, provider_id: str) -> Optional[WalkerState]:
        ...

    def set_walker_state(self, provider_id: str, state: WalkerState) -> None:
        ...

    def add_piece_payload_blocks(self, provider_id: str, piece_cid: str, *payload_cids: str) -> None:
        ...

    def get_piece_payload_blocks(self, provider_id: str, piece_cid: str) -> List[str]:
        ...

    def count_pieces_indexed(self, provider_id: str) -> int:
        ...
