import pytest
from conftest import ALICE, BOB

from gamestake_indexer.dedup import Deduplicator
from gamestake_indexer.errors import ResourceExhausted


class TestDeduplicator:
    def setup_method(self):
        self.dedup = Deduplicator(retention_blocks=10)

    def test_identity_admitted_once(self, events):
        record = events.purchase(ALICE, block=5)
        assert self.dedup.admit(record) is True
        assert self.dedup.admit(record) is False
        assert self.dedup.duplicates == 1

    def test_same_tx_different_log_index_are_distinct(self, events):
        first = events.purchase(ALICE, block=5, tx="0x" + "ab" * 32, log_index=0)
        second = events.purchase(BOB, block=5, tx="0x" + "ab" * 32, log_index=1)
        assert self.dedup.admit(first)
        assert self.dedup.admit(second)
        assert len(self.dedup) == 2

    def test_identities_kept_for_retention_window(self, events):
        old = events.purchase(ALICE, block=5)
        self.dedup.admit(old)
        self.dedup.admit(events.purchase(BOB, block=15))
        assert old.identity in self.dedup
        assert self.dedup.admit(old) is False

        self.dedup.admit(events.purchase(BOB, block=16))
        assert old.identity not in self.dedup

    def test_records_older_than_window_are_dropped(self, events):
        self.dedup.admit(events.purchase(ALICE, block=100))
        late = events.purchase(BOB, block=80)
        assert self.dedup.admit(late) is False
        assert self.dedup.too_old == 1
        assert late.identity not in self.dedup

    def test_capacity_overflow_is_not_masked(self, events):
        dedup = Deduplicator(retention_blocks=1000, max_identities=3)
        for block in range(3):
            dedup.admit(events.purchase(ALICE, block=block))
        with pytest.raises(ResourceExhausted):
            dedup.admit(events.purchase(ALICE, block=3))
