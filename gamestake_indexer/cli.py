"""Command line entry point.

Usage:
  python -m gamestake_indexer --config config.json run
  python -m gamestake_indexer --config config.json backfill --from-block 0
  python -m gamestake_indexer --config config.json state --limit 20
  python -m gamestake_indexer --config config.json events --kind Settled
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from .config import IndexerConfig, load_config
from .errors import ConfigError, IndexerError
from .journal import EventJournal
from .pipeline import IngestionPipeline
from .query import QueryAPI
from .records import Checkpoint, EventKind
from .source import EventSource
from .util import json_dumps, log


def _require_journal(cfg: IndexerConfig) -> EventJournal:
    if not cfg.db_path:
        raise ConfigError("db_path is required for this command")
    return EventJournal(cfg.db_path)


def _run(cfg: IndexerConfig) -> None:
    import uvicorn

    from .api import create_app

    pipeline = IngestionPipeline(cfg)
    query = QueryAPI(pipeline.store, health=pipeline.health)
    app = create_app(query, pipeline)
    log(f"Serving leaderboard API on {cfg.api_host}:{cfg.api_port}")
    uvicorn.run(app, host=cfg.api_host, port=cfg.api_port)


def _backfill(cfg: IndexerConfig, from_block: int, to_block: Optional[int]) -> None:
    """Fetch a block range into the journal without applying or serving it.

    The sync cursor is left alone: an arbitrary range is not contiguous with it.
    """
    journal = _require_journal(cfg)

    async def _run_backfill() -> None:
        source = EventSource(cfg)
        end = to_block if to_block is not None else await source.latest_block()
        stored = 0
        async for item in source.records_between(from_block, end):
            if not isinstance(item, Checkpoint) and journal.append(item):
                stored += 1
        log(f"Backfill {from_block}-{end} stored {stored} new events")

    try:
        asyncio.run(_run_backfill())
    finally:
        journal.close()


def _state(cfg: IndexerConfig, limit: int) -> None:
    pipeline = IngestionPipeline(cfg, journal=_require_journal(cfg))
    try:
        pipeline.replay_journal(full=True)
        query = QueryAPI(pipeline.store)
        snapshot = pipeline.store.read_snapshot()
        print(
            json_dumps(
                {
                    "leaderboard": query.leaderboard(limit).model_dump(mode="json", by_alias=True),
                    "recent": query.recent_matches(limit).model_dump(mode="json", by_alias=True),
                    "pendingEvents": snapshot.pending_events,
                    "alerts": [a.to_dict() for a in snapshot.recent_alerts],
                }
            )
        )
    finally:
        pipeline.close()


def _events(cfg: IndexerConfig, kind: Optional[str], limit: int) -> None:
    journal = _require_journal(cfg)
    try:
        print(json_dumps(journal.query(kind, limit)))
    finally:
        journal.close()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="GameStake leaderboard indexer")
    parser.add_argument("--config", default=None, help="Path to config JSON (env vars override)")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Ingest events and serve the leaderboard API")

    backfill_parser = sub.add_parser("backfill", help="Fetch a block range into the journal")
    backfill_parser.add_argument("--from-block", type=int, required=True)
    backfill_parser.add_argument("--to-block", type=int, default=None)

    state_parser = sub.add_parser("state", help="Rebuild state from the journal and print it")
    state_parser.add_argument("--limit", type=int, default=10)

    events_parser = sub.add_parser("events", help="Query journaled events")
    events_parser.add_argument("--kind", choices=[k.value for k in EventKind], default=None)
    events_parser.add_argument("--limit", type=int, default=200)

    args = parser.parse_args(argv)
    try:
        cfg = load_config(args.config)
        if args.command == "run":
            _run(cfg)
        elif args.command == "backfill":
            _backfill(cfg, args.from_block, args.to_block)
        elif args.command == "state":
            _state(cfg, args.limit)
        elif args.command == "events":
            _events(cfg, args.kind, args.limit)
    except ConfigError as exc:
        sys.stderr.write(f"config error: {exc}\n")
        raise SystemExit(2)
    except IndexerError as exc:
        log(f"FATAL: {exc}")
        raise SystemExit(1)
