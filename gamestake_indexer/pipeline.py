import time
from typing import Any, Dict, List, Optional

from .aggregator import Aggregator, ApplyResult
from .config import IndexerConfig
from .dedup import Deduplicator
from .errors import IndexerError
from .journal import EventJournal
from .records import Checkpoint, EventRecord
from .source import EventSource
from .store import MutableState, StateStore
from .util import log


class IngestionPipeline:
    """The single writer: source -> dedup -> journal -> aggregator -> store."""

    def __init__(
        self,
        config: IndexerConfig,
        store: Optional[StateStore] = None,
        source: Optional[EventSource] = None,
        journal: Optional[EventJournal] = None,
    ):
        self.config = config
        self.store = store or StateStore()
        self.source = source
        if journal is None and config.db_path:
            journal = EventJournal(config.db_path)
        self.journal = journal
        self.dedup = Deduplicator(config.dedup_retention_blocks, config.max_seen_identities)
        self.aggregator = Aggregator(
            wait_horizon_blocks=config.predecessor_wait_blocks,
            max_pending=config.max_pending_events,
            alert_history=config.alert_history,
        )
        self.processed = 0
        self.last_event_at: Optional[float] = None
        self.fatal_error: Optional[str] = None
        self._stopping = False

    def ingest(self, record: EventRecord, journal: bool = True) -> List[ApplyResult]:
        if not self.dedup.admit(record):
            return []
        if journal and self.journal is not None:
            self.journal.append(record)
        results = self.store.apply_mutation(lambda state: self.aggregator.apply(state, record))
        self.processed += 1
        self.last_event_at = time.time()
        return results

    def checkpoint(self, checkpoint: Checkpoint, persist: bool = True) -> List[ApplyResult]:
        def advance(state: MutableState) -> List[ApplyResult]:
            if state.last_block is None or checkpoint.block_number > state.last_block:
                state.last_block = checkpoint.block_number
            return self.aggregator.expire(state, checkpoint.block_number)

        results = self.store.apply_mutation(advance)
        if persist and self.journal is not None:
            self.journal.update_sync_state(checkpoint.block_number, checkpoint.block_timestamp)
        return results

    def replay_journal(self, full: bool = False) -> int:
        """Rebuild state from journaled events; returns how many were replayed.

        Only events up to the sync cursor are replayed; later ones (an open
        block, a manual ``backfill`` range) are delivered again by the source.
        ``full`` replays everything, for read-only inspection.
        """
        if self.journal is None:
            return 0
        last = self.journal.last_processed_block()
        if last is None and not full:
            log("Journal has no sync cursor yet, nothing to replay")
            return 0
        count = 0
        for record in self.journal.iter_events(to_block=None if full else last):
            self.ingest(record, journal=False)
            count += 1
        if last is not None:
            self.checkpoint(Checkpoint(last), persist=False)
        log(f"Replayed {count} journaled events (sync cursor {last})")
        return count

    def resume_block(self) -> int:
        last = self.journal.last_processed_block() if self.journal is not None else None
        if last is None:
            return self.config.start_block
        return max(self.config.start_block, last + 1 - self.config.backfill_overlap_blocks)

    async def run(self) -> None:
        if self.source is None:
            self.source = EventSource(self.config)
        start = self.resume_block()
        self.source.resume_from(start)
        log(f"Starting ingestion at block {start}")
        records = self.source.records()
        try:
            async for item in records:
                if isinstance(item, Checkpoint):
                    self.checkpoint(item)
                else:
                    self.ingest(item)
                if self._stopping:
                    break
        except IndexerError as exc:
            self.fatal_error = f"{type(exc).__name__}: {exc}"
            log(f"FATAL: ingestion stopped: {exc}")
            raise
        finally:
            await records.aclose()
            dropped = self.store.apply_mutation(self.aggregator.discard_pending)
            if dropped:
                log(f"WARN: discarded {dropped} events still waiting for predecessors")
            log(f"Ingestion stopped after {self.processed} events")

    def stop(self) -> None:
        self._stopping = True
        if self.source is not None:
            self.source.stop()

    def close(self) -> None:
        if self.journal is not None:
            self.journal.close()
            self.journal = None

    def health(self) -> Dict[str, Any]:
        source = self.source
        snapshot = self.store.read_snapshot()
        failures = source.consecutive_failures if source is not None else 0
        last_progress = source.last_progress_at if source is not None else None
        stale = (
            last_progress is not None
            and time.time() - last_progress > self.config.stale_after_seconds
        )
        degraded = bool(self.fatal_error) or failures > 0 or stale
        return {
            "status": "degraded" if degraded else "ok",
            "lastBlock": snapshot.last_block,
            "eventsProcessed": self.processed,
            "lastEventAt": self.last_event_at,
            "lastProgressAt": last_progress,
            "sourceFailures": failures,
            "lastError": self.fatal_error or (source.last_error if source is not None else None),
            "malformedLogs": source.malformed_count if source is not None else 0,
            "pendingEvents": snapshot.pending_events,
            "outcomes": dict(snapshot.outcomes),
            "alerts": snapshot.alert_count,
            "recentAlerts": [alert.to_dict() for alert in snapshot.recent_alerts],
        }
