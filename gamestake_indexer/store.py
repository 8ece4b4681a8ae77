"""Match and player tables behind a single serialized writer.

Mutations run against a working copy of the tables and are published with one
reference swap, so readers holding a Snapshot never observe half an event.
Records are frozen dataclasses; the copy is shallow and costs O(tables) per
mutation.
"""

import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from .records import MatchRecord, PlayerStats

T = TypeVar("T")


@dataclass
class MutableState:
    """Working copy handed to a mutation function."""

    matches: Dict[str, MatchRecord] = field(default_factory=dict)
    players: Dict[str, PlayerStats] = field(default_factory=dict)
    last_block: Optional[int] = None
    # aggregator bookkeeping, published with the tables it describes
    pending_events: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    alert_count: int = 0
    recent_alerts: Tuple[Any, ...] = ()

    def player(self, address: str) -> PlayerStats:
        return self.players.get(address) or PlayerStats(address=address)


@dataclass(frozen=True)
class Snapshot:
    matches: Mapping[str, MatchRecord]
    players: Mapping[str, PlayerStats]
    last_block: Optional[int]
    version: int
    published_at: float
    pending_events: int = 0
    outcomes: Mapping[str, int] = field(default_factory=dict)
    alert_count: int = 0
    recent_alerts: Tuple[Any, ...] = ()

    def match(self, match_id: str) -> Optional[MatchRecord]:
        return self.matches.get(match_id)

    def player(self, address: str) -> PlayerStats:
        return self.players.get(address) or PlayerStats(address=address)

    def ranked_players(self, limit: Optional[int] = None) -> List[PlayerStats]:
        ranked = sorted(self.players.values(), key=lambda p: (-p.total_won, p.address))
        return ranked if limit is None else ranked[:limit]

    def recent_matches(self, limit: Optional[int] = None) -> List[MatchRecord]:
        recent = sorted(
            self.matches.values(), key=lambda m: (m.updated_order, m.match_id), reverse=True
        )
        return recent if limit is None else recent[:limit]


def _freeze(state: MutableState, version: int) -> Snapshot:
    return Snapshot(
        matches=MappingProxyType(state.matches),
        players=MappingProxyType(state.players),
        last_block=state.last_block,
        version=version,
        published_at=time.time(),
        pending_events=state.pending_events,
        outcomes=MappingProxyType(state.outcomes),
        alert_count=state.alert_count,
        recent_alerts=state.recent_alerts,
    )


class StateStore:
    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._snapshot = _freeze(MutableState(), 0)

    def read_snapshot(self) -> Snapshot:
        return self._snapshot

    def apply_mutation(self, fn: Callable[[MutableState], T]) -> T:
        """Run ``fn`` on a private copy and publish it if ``fn`` returns.

        At most one mutation runs at a time. An exception leaves the published
        state untouched.
        """
        with self._write_lock:
            current = self._snapshot
            working = MutableState(
                matches=dict(current.matches),
                players=dict(current.players),
                last_block=current.last_block,
                pending_events=current.pending_events,
                outcomes=dict(current.outcomes),
                alert_count=current.alert_count,
                recent_alerts=current.recent_alerts,
            )
            result = fn(working)
            self._snapshot = _freeze(working, current.version + 1)
            return result
