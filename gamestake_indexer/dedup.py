from collections import OrderedDict
from typing import Optional

from .errors import ResourceExhausted
from .records import EventRecord, Identity
from .util import log


class Deduplicator:
    """Admits each (transaction hash, log index) identity exactly once.

    Identities are kept for ``retention_blocks`` behind the highest block seen,
    which must cover the overlap the source re-delivers after a restart or
    reconnect. A record older than that window can no longer be proven fresh
    and is dropped rather than risk a double count.
    """

    def __init__(self, retention_blocks: int = 256, max_identities: int = 1_000_000):
        if retention_blocks < 0:
            raise ValueError("retention_blocks must be >= 0")
        self.retention_blocks = retention_blocks
        self.max_identities = max_identities
        # identity -> block number, in admission order
        self._seen: "OrderedDict[Identity, int]" = OrderedDict()
        self.high_water: Optional[int] = None
        self.duplicates = 0
        self.too_old = 0

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, identity: Identity) -> bool:
        return identity in self._seen

    @property
    def horizon(self) -> Optional[int]:
        if self.high_water is None:
            return None
        return self.high_water - self.retention_blocks

    def admit(self, record: EventRecord) -> bool:
        identity = record.identity
        if identity in self._seen:
            self.duplicates += 1
            return False
        horizon = self.horizon
        if horizon is not None and record.block_number < horizon:
            self.too_old += 1
            log(
                f"WARN: dropping {record.kind.value} {identity[0]}:{identity[1]} at block "
                f"{record.block_number}, older than dedup window (horizon {horizon})"
            )
            return False
        self._remember(identity, record.block_number)
        return True

    def _remember(self, identity: Identity, block_number: int) -> None:
        if self.high_water is None or block_number > self.high_water:
            self.high_water = block_number
            self._evict()
        if len(self._seen) >= self.max_identities:
            raise ResourceExhausted(
                f"dedup set holds {len(self._seen)} identities (max_seen_identities="
                f"{self.max_identities}); raise the cap or shrink dedup_retention_blocks"
            )
        self._seen[identity] = block_number

    def _evict(self) -> None:
        horizon = self.horizon
        if horizon is None:
            return
        # Admission order is close to block order, so expired entries cluster at the front.
        while self._seen:
            identity, block_number = next(iter(self._seen.items()))
            if block_number >= horizon:
                break
            del self._seen[identity]
        if len(self._seen) > self.max_identities // 2:
            stale = [i for i, b in self._seen.items() if b < horizon]
            for identity in stale:
                del self._seen[identity]
