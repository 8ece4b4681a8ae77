"""Read-side queries. Every call works on one snapshot and never mutates it."""

from typing import Any, Callable, Dict, Optional

from .schemas import LeaderboardResponse, MatchEntry, PlayerEntry, RecentMatchesResponse
from .store import StateStore
from .util import normalize_address

DEFAULT_LIMIT = 10


class QueryAPI:
    def __init__(self, store: StateStore, health: Optional[Callable[[], Dict[str, Any]]] = None):
        self.store = store
        self._health = health

    def status(self) -> Dict[str, Any]:
        if self._health is not None:
            return self._health()
        snapshot = self.store.read_snapshot()
        return {"status": "ok", "lastBlock": snapshot.last_block}

    @property
    def degraded(self) -> bool:
        return self.status().get("status") != "ok"

    def leaderboard(self, limit: int = DEFAULT_LIMIT) -> LeaderboardResponse:
        snapshot = self.store.read_snapshot()
        ranked = snapshot.ranked_players(max(limit, 0))
        return LeaderboardResponse(
            leaderboard=[PlayerEntry.from_stats(p, rank=i) for i, p in enumerate(ranked, start=1)],
            total_players=len(snapshot.players),
            total_matches=len(snapshot.matches),
            last_block=snapshot.last_block,
            degraded=self.degraded,
        )

    def player_stats(self, address: str) -> PlayerEntry:
        """Stats for ``address``; unknown players get a zeroed record.

        Raises ValueError for strings that are not 20-byte hex addresses.
        """
        addr = normalize_address(address)
        return PlayerEntry.from_stats(self.store.read_snapshot().player(addr))

    def recent_matches(self, limit: int = DEFAULT_LIMIT) -> RecentMatchesResponse:
        snapshot = self.store.read_snapshot()
        return RecentMatchesResponse(
            recent_matches=[MatchEntry.from_record(m) for m in snapshot.recent_matches(max(limit, 0))],
            last_block=snapshot.last_block,
            degraded=self.degraded,
        )

    def match(self, match_id: str) -> Optional[MatchEntry]:
        record = self.store.read_snapshot().match(match_id.lower())
        return MatchEntry.from_record(record) if record is not None else None
