"""End-to-end tests for the single-writer ingestion pipeline.

CRITICAL TESTS:
- Delivering the same identity twice MUST leave state unchanged
- Journal replay MUST rebuild exactly the state that was served before restart
- A range the node keeps refusing MUST stop ingestion and mark health degraded
"""

import asyncio
from decimal import Decimal

import pytest
from conftest import ALICE, BOB, CAROL, M1, M2, FakeWeb3, build_log

from gamestake_indexer.errors import SourceGapError
from gamestake_indexer.journal import EventJournal
from gamestake_indexer.pipeline import IngestionPipeline
from gamestake_indexer.records import Checkpoint, MatchStatus
from gamestake_indexer.source import EventSource


class TestIngest:
    @pytest.fixture(autouse=True)
    def _pipeline(self, config):
        self.pipeline = IngestionPipeline(config)

    def test_redelivered_identity_is_applied_once(self, events):
        stream = [
            events.created(M1, ALICE, BOB, block=1),
            events.staked(M1, ALICE, block=2),
            events.settled(M1, ALICE, payout="100", block=3),
        ]
        for record in stream + stream:
            self.pipeline.ingest(record)

        snapshot = self.pipeline.store.read_snapshot()
        assert snapshot.player(ALICE).wins == 1
        assert snapshot.player(BOB).matches_played == 1
        assert self.pipeline.processed == 3
        assert self.pipeline.dedup.duplicates == 3

    def test_purchase_replay_is_ignored(self, events):
        first = events.purchase(CAROL, gt="100", block=1)
        second = events.purchase(CAROL, gt="100", block=2)
        self.pipeline.ingest(first)
        self.pipeline.ingest(second)
        assert self.pipeline.store.read_snapshot().player(CAROL).tokens_purchased == Decimal("200")

        assert self.pipeline.ingest(first) == []
        assert self.pipeline.store.read_snapshot().player(CAROL).tokens_purchased == Decimal("200")

    def test_checkpoint_advances_last_block_and_expires_orphans(self, events):
        self.pipeline.ingest(events.settled(M2, ALICE, block=5))
        self.pipeline.checkpoint(Checkpoint(12))
        assert self.pipeline.aggregator.pending_count == 1
        assert self.pipeline.store.read_snapshot().last_block == 12

        self.pipeline.checkpoint(Checkpoint(16))
        assert self.pipeline.aggregator.pending_count == 0
        assert self.pipeline.health()["alerts"] == 1

        self.pipeline.checkpoint(Checkpoint(14))
        assert self.pipeline.store.read_snapshot().last_block == 16

    def test_bookkeeping_is_published_with_the_snapshot(self, events):
        self.pipeline.ingest(events.settled(M2, ALICE, block=5))
        waiting = self.pipeline.store.read_snapshot()
        assert waiting.pending_events == 1
        assert waiting.outcomes == {"pending": 1}

        self.pipeline.checkpoint(Checkpoint(16))
        current = self.pipeline.store.read_snapshot()
        assert (current.pending_events, current.alert_count) == (0, 1)
        assert current.recent_alerts[-1].match_id == M2
        assert (waiting.pending_events, waiting.alert_count) == (1, 0)

        health = self.pipeline.health()
        assert health["pendingEvents"] == 0
        assert health["outcomes"] == {"pending": 1, "expired": 1}
        assert health["recentAlerts"][0]["matchId"] == M2


class TestJournalReplay:
    def test_restart_rebuilds_state(self, tmp_path, config, events):
        db_path = str(tmp_path / "events.db")
        cfg = config.model_copy(update={"db_path": db_path, "start_block": 0})

        first = IngestionPipeline(cfg)
        first.ingest(events.created(M1, ALICE, BOB, block=1))
        first.ingest(events.staked(M1, ALICE, block=2))
        first.ingest(events.settled(M1, BOB, payout="120", block=3))
        first.ingest(events.purchase(CAROL, gt="7.5", block=3, log_index=1))
        first.checkpoint(Checkpoint(30, 1_700_000_360))
        before = first.store.read_snapshot()
        first.close()

        second = IngestionPipeline(cfg)
        assert second.replay_journal() == 4
        after = second.store.read_snapshot()

        assert dict(after.matches) == dict(before.matches)
        assert dict(after.players) == dict(before.players)
        assert after.last_block == 30
        assert after.player(CAROL).tokens_purchased == Decimal("7.5")
        assert second.resume_block() == 30 + 1 - cfg.backfill_overlap_blocks
        second.close()

    def test_pending_event_is_rebuffered_after_restart(self, tmp_path, config, events):
        cfg = config.model_copy(update={"db_path": str(tmp_path / "events.db")})
        settled = events.settled(M1, ALICE, payout="100", block=3)

        first = IngestionPipeline(cfg)
        first.ingest(settled)
        first.checkpoint(Checkpoint(4))
        first.close()

        second = IngestionPipeline(cfg)
        second.replay_journal()
        assert second.aggregator.pending_for(M1) == [settled]

        second.ingest(events.created(M1, ALICE, BOB, block=1))
        second.ingest(events.staked(M1, ALICE, block=2))
        assert second.store.read_snapshot().match(M1).status is MatchStatus.SETTLED
        second.close()

    def test_manual_backfill_past_cursor_does_not_block_older_events(self, tmp_path, config, events):
        cfg = config.model_copy(update={"db_path": str(tmp_path / "events.db")})
        journal = EventJournal(cfg.db_path)
        journal.update_sync_state(1000)
        ahead = events.purchase(CAROL, gt="5", block=5000)
        journal.append(ahead)
        journal.close()

        pipeline = IngestionPipeline(cfg)
        assert pipeline.replay_journal() == 0
        assert pipeline.resume_block() == 1000 + 1 - cfg.backfill_overlap_blocks

        results = pipeline.ingest(events.purchase(CAROL, gt="2", block=1500))
        assert [r.outcome.value for r in results] == ["applied"]
        assert pipeline.dedup.too_old == 0

        pipeline.ingest(ahead)
        pipeline.ingest(ahead)
        assert pipeline.store.read_snapshot().player(CAROL).tokens_purchased == Decimal("7")
        pipeline.close()

    def test_full_replay_includes_events_past_cursor(self, tmp_path, config, events):
        cfg = config.model_copy(update={"db_path": str(tmp_path / "events.db")})
        journal = EventJournal(cfg.db_path)
        journal.update_sync_state(10)
        journal.append(events.purchase(CAROL, gt="1", block=9))
        journal.append(events.purchase(CAROL, gt="5", block=5000))
        journal.close()

        pipeline = IngestionPipeline(cfg)
        assert pipeline.replay_journal(full=True) == 2
        assert pipeline.store.read_snapshot().player(CAROL).tokens_purchased == Decimal("6")
        pipeline.close()

    def test_journal_ignores_repeated_identity(self, tmp_path, events):
        journal = EventJournal(str(tmp_path / "events.db"))
        record = events.purchase(ALICE, block=1)
        assert journal.append(record) is True
        assert journal.append(record) is False
        assert [r.identity for r in journal.iter_events()] == [record.identity]
        journal.update_sync_state(10)
        journal.update_sync_state(8)
        assert journal.last_processed_block() == 10
        journal.close()


def match_logs():
    return [
        build_log("MatchCreated", {"matchId": M1, "player1": ALICE, "player2": BOB, "stake": 5 * 10**18}, 2),
        build_log("Staked", {"matchId": M1, "player": ALICE, "amount": 5 * 10**18}, 3),
        build_log("Settled", {"matchId": M1, "winner": ALICE, "totalPayout": 10 * 10**18}, 5),
    ]


class TestRun:
    def test_polls_source_until_stopped(self, config):
        source = EventSource(config, w3=FakeWeb3(match_logs(), block_number=8))
        pipeline = IngestionPipeline(config, source=source)

        async def main():
            task = asyncio.create_task(pipeline.run())
            for _ in range(500):
                if pipeline.store.read_snapshot().last_block == 8:
                    break
                await asyncio.sleep(0.01)
            pipeline.stop()
            await task

        asyncio.run(main())

        snapshot = pipeline.store.read_snapshot()
        assert snapshot.match(M1).status is MatchStatus.SETTLED
        assert snapshot.player(ALICE).total_won == Decimal("10")
        assert pipeline.health()["status"] == "ok"
        assert pipeline.fatal_error is None

    def test_range_that_keeps_failing_is_fatal_and_reported(self, config):
        w3 = FakeWeb3(match_logs(), block_number=8)
        w3.eth.fail_with = ValueError({"code": -32000, "message": "missing trie node"})
        pipeline = IngestionPipeline(config, source=EventSource(config, w3=w3))

        with pytest.raises(SourceGapError):
            asyncio.run(pipeline.run())
        assert len(w3.eth.get_logs_calls) == config.max_range_retries + 1

        health = pipeline.health()
        assert health["status"] == "degraded"
        assert "SourceGapError" in health["lastError"]
        assert pipeline.store.read_snapshot().last_block is None
