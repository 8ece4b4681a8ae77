"""sqlite journal of admitted events and the source's sync cursor.

Replaying the journal through the aggregator rebuilds the leaderboard after a
restart, so the in-memory StateStore never has to be persisted itself.
"""

import json
import sqlite3
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from .records import EventKind, EventRecord
from .util import json_dumps

_DECIMAL_FIELDS = {"stake", "amount", "total_payout", "usdt_amount", "gt_out"}


def _encode_payload(payload: Dict[str, Any]) -> str:
    return json_dumps(payload, sort_keys=True)


def _decode_payload(raw: str) -> Dict[str, Any]:
    payload = json.loads(raw) if raw else {}
    for key in _DECIMAL_FIELDS.intersection(payload):
        if payload[key] is not None:
            payload[key] = Decimal(str(payload[key]))
    return payload


class EventJournal:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                block_timestamp INTEGER,
                transaction_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                contract_address TEXT,
                event_kind TEXT NOT NULL,
                match_id TEXT,
                payload TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(transaction_hash, log_index)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_block ON events(block_number, log_index)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_kind ON events(event_kind)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_events_match ON events(match_id)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                last_processed_block INTEGER NOT NULL,
                last_processed_timestamp INTEGER,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def append(self, record: EventRecord) -> bool:
        """Store an event; returns False if its identity was already journaled."""
        cur = self.conn.cursor()
        cur.execute(
            """
            INSERT OR IGNORE INTO events (
                block_number, block_timestamp, transaction_hash, log_index,
                contract_address, event_kind, match_id, payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.block_number,
                record.block_timestamp,
                record.transaction_hash,
                record.log_index,
                record.contract_address,
                record.kind.value,
                record.match_id,
                _encode_payload(dict(record.payload)),
            ),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def last_processed_block(self) -> Optional[int]:
        row = self.conn.execute("SELECT last_processed_block FROM sync_state WHERE id = 1").fetchone()
        return None if row is None else int(row["last_processed_block"])

    def update_sync_state(self, block_number: int, block_timestamp: Optional[int] = None) -> None:
        current = self.last_processed_block()
        if current is not None and block_number <= current:
            return
        self.conn.execute(
            """
            INSERT INTO sync_state (id, last_processed_block, last_processed_timestamp)
            VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_processed_block = excluded.last_processed_block,
                last_processed_timestamp = excluded.last_processed_timestamp,
                updated_at = CURRENT_TIMESTAMP
            """,
            (block_number, block_timestamp),
        )
        self.conn.commit()

    def iter_events(self, from_block: int = 0, to_block: Optional[int] = None) -> Iterator[EventRecord]:
        where = "WHERE block_number >= ?"
        params: List[Any] = [from_block]
        if to_block is not None:
            where += " AND block_number <= ?"
            params.append(to_block)
        rows = self.conn.execute(
            "SELECT block_number, block_timestamp, transaction_hash, log_index, contract_address, "
            f"event_kind, payload FROM events {where} ORDER BY block_number ASC, log_index ASC",
            params,
        )
        for row in rows:
            yield self._row_to_record(row)

    def query(self, kind: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
        params: List[Any] = []
        where = ""
        if kind:
            where = "WHERE event_kind = ?"
            params.append(kind)
        params.append(limit)
        rows = self.conn.execute(
            "SELECT block_number, block_timestamp, transaction_hash, log_index, contract_address, "
            f"event_kind, payload FROM events {where} "
            "ORDER BY block_number DESC, log_index DESC LIMIT ?",
            params,
        ).fetchall()
        return [self._row_to_record(row).to_dict() for row in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> EventRecord:
        return EventRecord(
            kind=EventKind(row["event_kind"]),
            transaction_hash=row["transaction_hash"],
            log_index=row["log_index"],
            block_number=row["block_number"],
            block_timestamp=row["block_timestamp"],
            contract_address=row["contract_address"],
            payload=_decode_payload(row["payload"]),
        )
