"""GameStake leaderboard indexer.

Follows PlayGame/TokenStore contract events and maintains per-player
statistics and per-match lifecycle records behind a read-only HTTP API.
"""

__version__ = "0.2.0"

from .aggregator import Aggregator, ApplyResult, ConsistencyAlert, Outcome, apply_event  # noqa: E402
from .records import EventKind, EventRecord, MatchRecord, MatchStatus, PlayerStats  # noqa: E402
from .store import StateStore  # noqa: E402

__all__ = [
    "Aggregator",
    "ApplyResult",
    "ConsistencyAlert",
    "EventKind",
    "EventRecord",
    "MatchRecord",
    "MatchStatus",
    "Outcome",
    "PlayerStats",
    "StateStore",
    "apply_event",
]
