"""CLI entry point for the committed-state ingestion service.

Usage:
    python -m nodelog [run]          # ingest history, then tail the live log
    python -m nodelog dedupe         # repair duplicates and ensure indexes
    python -m nodelog stats [--limit N]
"""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from .config import IngestConfig, load_config
from .runtime.event_store import EventStore, EventStoreError, connect_event_store
from .runtime.log_tailer import TailerError
from .runtime.service import IngestService

logger = logging.getLogger(__name__)


def _configure_logging(cfg: IngestConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _print_stats(store: EventStore, limit: int) -> None:
    print(f"committed_state documents: {store.count_committed()}")
    print(f"block_time_gap documents:  {store.count_gaps()}")

    print(f"\nLatest {limit} commits:")
    for event in store.latest_committed(limit):
        print(
            f"  height={event.height} txs={event.txs} "
            f"ts={event.timestamp.isoformat()} appHash={event.app_hash}"
        )

    print(f"\nLatest {limit} gaps:")
    for gap in store.recent_gaps(limit):
        print(
            f"  height={gap.height} previous={gap.previous_height} "
            f"timeDiff={gap.time_diff:.2f}s txs={gap.txs}"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nodelog",
        description="Ingest node Committed State log lines into MongoDB",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Replay history and tail the live log (default)")
    subparsers.add_parser("dedupe", help="Remove duplicate heights and ensure unique indexes")

    stats_parser = subparsers.add_parser("stats", help="Show document counts and recent records")
    stats_parser.add_argument("--limit", type=int, default=5, help="Records to show (default: 5)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config()
    _configure_logging(cfg)
    command = args.command or "run"

    logger.info("MongoDB URI: %s", cfg.mongo_uri)
    logger.info("MongoDB database: %s", cfg.mongo_database)
    logger.info("Log directory: %s", cfg.log_dir)
    logger.info("Skip historical logs: %s", cfg.skip_historical)

    try:
        store = connect_event_store(cfg.mongo_uri, cfg.mongo_database)
    except EventStoreError as e:
        logger.error("%s", e)
        return 1

    try:
        if command == "dedupe":
            store.ensure_indexes()
        elif command == "stats":
            _print_stats(store, args.limit)
        else:
            IngestService(cfg, store).run()
    except (EventStoreError, TailerError) as e:
        logger.error("Fatal: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        store.close()

    return 0
