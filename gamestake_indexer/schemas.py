from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .records import MatchRecord, PlayerStats


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlayerEntry(_CamelModel):
    address: str
    wins: int
    matches_played: int
    total_gt_won: Decimal = Field(alias="totalGTWon")
    tokens_purchased: Decimal
    win_rate: float = Field(description="Percentage of played matches won (0-100)")
    rank: Optional[int] = None

    @classmethod
    def from_stats(cls, stats: PlayerStats, rank: Optional[int] = None) -> "PlayerEntry":
        return cls(
            address=stats.address,
            wins=stats.wins,
            matches_played=stats.matches_played,
            total_gt_won=stats.total_won,
            tokens_purchased=stats.tokens_purchased,
            win_rate=round(stats.win_rate * 100, 2),
            rank=rank,
        )


class MatchEntry(_CamelModel):
    match_id: str
    player1: str
    player2: Optional[str] = None
    stake: Decimal
    status: str
    winner: Optional[str] = None
    payout: Optional[Decimal] = None
    block_number: int
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_record(cls, record: MatchRecord) -> "MatchEntry":
        return cls(
            match_id=record.match_id,
            player1=record.player1,
            player2=record.player2,
            stake=record.stake,
            status=record.status.value,
            winner=record.winner,
            payout=record.payout,
            block_number=record.updated_order[0],
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class LeaderboardResponse(_CamelModel):
    leaderboard: List[PlayerEntry]
    total_players: int
    total_matches: int
    last_block: Optional[int] = None
    degraded: bool = False


class RecentMatchesResponse(_CamelModel):
    recent_matches: List[MatchEntry]
    last_block: Optional[int] = None
    degraded: bool = False
