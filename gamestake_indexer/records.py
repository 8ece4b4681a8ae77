"""Immutable records flowing through the indexer.

EventRecord is produced by the source and discarded after the aggregator has
seen it. MatchRecord and PlayerStats are the only durable entities; they are
replaced (never mutated in place) so published snapshots stay consistent.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

BlockOrder = Tuple[int, int]
Identity = Tuple[str, int]


class EventKind(str, Enum):
    TOKEN_PURCHASE = "TokenPurchase"
    MATCH_CREATED = "MatchCreated"
    STAKED = "Staked"
    SETTLED = "Settled"
    REFUNDED = "Refunded"


class MatchStatus(str, Enum):
    CREATED = "created"
    STAKED = "staked"
    SETTLED = "settled"
    REFUNDED = "refunded"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def terminal(self) -> bool:
        return self in (MatchStatus.SETTLED, MatchStatus.REFUNDED)


_STATUS_RANK = {
    MatchStatus.CREATED: 0,
    MatchStatus.STAKED: 1,
    MatchStatus.SETTLED: 2,
    MatchStatus.REFUNDED: 2,
}


@dataclass(frozen=True)
class EventRecord:
    kind: EventKind
    transaction_hash: str
    log_index: int
    block_number: int
    payload: Mapping[str, Any]
    block_timestamp: Optional[int] = None
    contract_address: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.payload, MappingProxyType):
            object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def identity(self) -> Identity:
        return (self.transaction_hash, self.log_index)

    @property
    def block_order(self) -> BlockOrder:
        return (self.block_number, self.log_index)

    @property
    def match_id(self) -> Optional[str]:
        return self.payload.get("match_id")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
            "block_timestamp": self.block_timestamp,
            "contract_address": self.contract_address,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class Checkpoint:
    """Every log up to and including ``block_number`` has been emitted."""

    block_number: int
    block_timestamp: Optional[int] = None


@dataclass(frozen=True)
class MatchRecord:
    match_id: str
    player1: str
    player2: Optional[str]
    stake: Decimal
    status: MatchStatus
    created_order: BlockOrder
    updated_order: BlockOrder
    winner: Optional[str] = None
    payout: Optional[Decimal] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def players(self) -> Tuple[str, ...]:
        return tuple(p for p in (self.player1, self.player2) if p)


@dataclass(frozen=True)
class PlayerStats:
    address: str
    wins: int = 0
    matches_played: int = 0
    total_won: Decimal = field(default_factory=Decimal)
    tokens_purchased: Decimal = field(default_factory=Decimal)

    @property
    def win_rate(self) -> float:
        if self.matches_played <= 0:
            return 0.0
        return self.wins / self.matches_played
