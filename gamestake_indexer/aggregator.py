"""Folds deduplicated contract events into match and player state.

``apply_event`` is the reducer: it inspects one event against the working
state and either applies it or explains why not. ``Aggregator`` wraps the
reducer with the predecessor buffer. Events that arrive ahead of the event
they depend on wait there until that event shows up or the source has moved
``wait_horizon_blocks`` past them.

Per match the order that counts is ``block_order``, not arrival order:

    stale      event is at or behind the match's last applied order -> dropped
               (a second Settled/Refunded is judged against the terminal
               record first, whatever its block)
    pending    prerequisite not observed yet -> buffered
    rejected   contradicts applied state -> consistency alert
    duplicate  restates applied state under a new identity -> dropped
"""

import time
from collections import Counter, deque
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Deque, Dict, List, Optional

from .errors import ResourceExhausted
from .records import EventKind, EventRecord, Identity, MatchRecord, MatchStatus
from .store import MutableState
from .util import log


class Outcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    DUPLICATE = "duplicate"
    PENDING = "pending"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ApplyResult:
    outcome: Outcome
    event: EventRecord
    reason: str = ""


@dataclass(frozen=True)
class ConsistencyAlert:
    kind: str
    identity: Identity
    block_number: int
    reason: str
    match_id: Optional[str] = None
    raised_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "matchId": self.match_id,
            "transactionHash": self.identity[0],
            "logIndex": self.identity[1],
            "blockNumber": self.block_number,
            "reason": self.reason,
            "raisedAt": self.raised_at,
        }


# Statuses a match must be in for each kind to apply.
_REQUIRES = {
    EventKind.STAKED: (MatchStatus.CREATED,),
    EventKind.SETTLED: (MatchStatus.STAKED,),
    EventKind.REFUNDED: (MatchStatus.CREATED, MatchStatus.STAKED),
}

_TERMINAL_KINDS = (EventKind.SETTLED, EventKind.REFUNDED)


def _later(current: Optional[int], ts: Optional[int]) -> Optional[int]:
    if ts is None:
        return current
    if current is None:
        return ts
    return max(current, ts)


def _touch(record: MatchRecord, event: EventRecord, **changes) -> MatchRecord:
    return replace(
        record,
        updated_order=event.block_order,
        updated_at=_later(record.updated_at, event.block_timestamp),
        **changes,
    )


def apply_event(state: MutableState, event: EventRecord) -> ApplyResult:
    """Apply one event to ``state`` in place, or leave it untouched and say why."""
    if event.kind is EventKind.TOKEN_PURCHASE:
        buyer = event.payload["buyer"]
        stats = state.player(buyer)
        state.players[buyer] = replace(
            stats, tokens_purchased=stats.tokens_purchased + event.payload["gt_out"]
        )
        return ApplyResult(Outcome.APPLIED, event)

    match_id = event.match_id
    record = state.matches.get(match_id)
    if record is not None and record.status.terminal and event.kind in _TERMINAL_KINDS:
        return _restated_terminal(record, event)
    if record is not None and event.block_order <= record.updated_order:
        return ApplyResult(
            Outcome.STALE,
            event,
            f"order {event.block_order} is not after applied order {record.updated_order}",
        )

    if event.kind is EventKind.MATCH_CREATED:
        if record is not None:
            return ApplyResult(Outcome.REJECTED, event, f"match already exists ({record.status.value})")
        state.matches[match_id] = MatchRecord(
            match_id=match_id,
            player1=event.payload["player1"],
            player2=event.payload.get("player2"),
            stake=event.payload["stake"],
            status=MatchStatus.CREATED,
            created_order=event.block_order,
            updated_order=event.block_order,
            created_at=event.block_timestamp,
            updated_at=event.block_timestamp,
        )
        return ApplyResult(Outcome.APPLIED, event)

    if record is None:
        return ApplyResult(Outcome.PENDING, event, "match not observed yet")

    if record.status.terminal:
        return _restated_terminal(record, event)

    required = _REQUIRES[event.kind]
    if record.status not in required:
        if record.status.rank < min(s.rank for s in required):
            return ApplyResult(
                Outcome.PENDING, event, f"match is {record.status.value}, waiting for predecessor"
            )
        if event.kind is EventKind.STAKED:
            return _second_leg(state, record, event)
        return ApplyResult(Outcome.REJECTED, event, f"{event.kind.value} while {record.status.value}")

    if event.kind is EventKind.STAKED:
        player = event.payload["player"]
        player2 = record.player2
        if player not in record.players:
            if player2 is not None:
                return ApplyResult(Outcome.REJECTED, event, f"staker {player} is not a participant")
            player2 = player
        state.matches[match_id] = _touch(record, event, status=MatchStatus.STAKED, player2=player2)
        return ApplyResult(Outcome.APPLIED, event)

    if event.kind is EventKind.REFUNDED:
        state.matches[match_id] = _touch(record, event, status=MatchStatus.REFUNDED)
        return ApplyResult(Outcome.APPLIED, event)

    return _settle(state, record, event)


def _restated_terminal(record: MatchRecord, event: EventRecord) -> ApplyResult:
    if event.kind is EventKind.SETTLED and record.status is MatchStatus.SETTLED:
        if record.winner == event.payload["winner"] and record.payout == event.payload["total_payout"]:
            return ApplyResult(Outcome.DUPLICATE, event, "settlement already recorded")
    elif event.kind is EventKind.REFUNDED and record.status is MatchStatus.REFUNDED:
        return ApplyResult(Outcome.DUPLICATE, event, "refund already recorded")
    return ApplyResult(
        Outcome.REJECTED,
        event,
        f"{event.kind.value} after terminal status {record.status.value}"
        + (f" (winner {record.winner})" if record.winner else ""),
    )


def _second_leg(state: MutableState, record: MatchRecord, event: EventRecord) -> ApplyResult:
    player = event.payload["player"]
    if player in record.players:
        return ApplyResult(Outcome.DUPLICATE, event, "stake leg on an already staked match")
    if record.player2 is None:
        state.matches[record.match_id] = _touch(record, event, player2=player)
        return ApplyResult(Outcome.APPLIED, event)
    return ApplyResult(Outcome.REJECTED, event, f"staker {player} is not a participant")


def _settle(state: MutableState, record: MatchRecord, event: EventRecord) -> ApplyResult:
    winner = event.payload["winner"]
    payout: Decimal = event.payload["total_payout"]
    player2 = record.player2
    if winner not in record.players:
        if player2 is not None:
            return ApplyResult(Outcome.REJECTED, event, f"winner {winner} is not a participant")
        player2 = winner
    loser = player2 if winner == record.player1 else record.player1
    if loser is None:
        return ApplyResult(Outcome.REJECTED, event, "settled without a known opponent")

    won = state.player(winner)
    state.players[winner] = replace(
        won,
        wins=won.wins + 1,
        matches_played=won.matches_played + 1,
        total_won=won.total_won + payout,
    )
    lost = state.player(loser)
    state.players[loser] = replace(lost, matches_played=lost.matches_played + 1)
    state.matches[record.match_id] = _touch(
        record, event, status=MatchStatus.SETTLED, player2=player2, winner=winner, payout=payout
    )
    return ApplyResult(Outcome.APPLIED, event)


class Aggregator:
    def __init__(
        self,
        wait_horizon_blocks: int = 64,
        max_pending: int = 10_000,
        alert_history: int = 100,
    ):
        self.wait_horizon_blocks = wait_horizon_blocks
        self.max_pending = max_pending
        self._pending: Dict[str, List[EventRecord]] = {}
        self.alerts: Deque[ConsistencyAlert] = deque(maxlen=alert_history)
        self.alert_count = 0
        self.counters: Counter = Counter()

    @property
    def pending_count(self) -> int:
        return sum(len(events) for events in self._pending.values())

    def pending_for(self, match_id: str) -> List[EventRecord]:
        return list(self._pending.get(match_id, ()))

    def apply(self, state: MutableState, event: EventRecord) -> List[ApplyResult]:
        result = apply_event(state, event)
        if result.outcome is Outcome.PENDING:
            self._buffer(event)
        results = [result]
        if result.outcome is Outcome.APPLIED and event.match_id in self._pending:
            drained = self._drain(state, event.match_id)
            if drained:
                log(f"Applied {len(drained)} buffered events for match {event.match_id}")
            results.extend(drained)
        for item in results:
            self._record(item)
        self._publish(state)
        return results

    def expire(self, state: MutableState, head_block: int) -> List[ApplyResult]:
        """Give up on buffered events the source has moved well past."""
        results = []
        for match_id in list(self._pending):
            waiting = []
            for event in self._pending[match_id]:
                if head_block - event.block_number > self.wait_horizon_blocks:
                    results.append(
                        ApplyResult(
                            Outcome.EXPIRED,
                            event,
                            f"predecessor not seen within {self.wait_horizon_blocks} blocks "
                            f"(head {head_block})",
                        )
                    )
                else:
                    waiting.append(event)
            if waiting:
                self._pending[match_id] = waiting
            else:
                del self._pending[match_id]
        for item in results:
            self._record(item)
        self._publish(state)
        return results

    def discard_pending(self, state: MutableState) -> int:
        dropped = self.pending_count
        self._pending.clear()
        self._publish(state)
        return dropped

    def _publish(self, state: MutableState) -> None:
        """Copy the buffer and outcome bookkeeping into the state being published."""
        state.pending_events = self.pending_count
        state.outcomes = dict(self.counters)
        state.alert_count = self.alert_count
        state.recent_alerts = tuple(self.alerts)

    def _buffer(self, event: EventRecord) -> None:
        if self.pending_count >= self.max_pending:
            raise ResourceExhausted(
                f"{self.pending_count} events waiting for predecessors "
                f"(max_pending_events={self.max_pending})"
            )
        self._pending.setdefault(event.match_id, []).append(event)

    def _drain(self, state: MutableState, match_id: str) -> List[ApplyResult]:
        results = []
        progressed = True
        while progressed and match_id in self._pending:
            progressed = False
            waiting = sorted(self._pending.pop(match_id), key=lambda e: e.block_order)
            still_waiting = []
            for event in waiting:
                result = apply_event(state, event)
                if result.outcome is Outcome.PENDING:
                    still_waiting.append(event)
                    continue
                results.append(result)
                progressed = progressed or result.outcome is Outcome.APPLIED
            if still_waiting:
                self._pending[match_id] = still_waiting
        return results

    def _record(self, result: ApplyResult) -> None:
        self.counters[result.outcome.value] += 1
        if result.outcome is Outcome.APPLIED:
            return
        event = result.event
        where = f"{event.kind.value} {event.match_id or event.payload.get('buyer')} @ {event.block_number}"
        if result.outcome is Outcome.PENDING:
            log(f"Buffering {where}: {result.reason}")
        elif result.outcome in (Outcome.STALE, Outcome.DUPLICATE):
            log(f"Skipping {result.outcome.value} {where}: {result.reason}")
        else:
            self._alert(result)

    def _alert(self, result: ApplyResult) -> None:
        event = result.event
        alert = ConsistencyAlert(
            kind=event.kind.value,
            identity=event.identity,
            block_number=event.block_number,
            reason=f"{result.outcome.value}: {result.reason}",
            match_id=event.match_id,
            raised_at=time.time(),
        )
        self.alerts.append(alert)
        self.alert_count += 1
        log(
            f"ALERT: {alert.kind} {alert.match_id} tx {alert.identity[0]}:{alert.identity[1]} "
            f"block {alert.block_number} {alert.reason}; manual reconciliation required"
        )
