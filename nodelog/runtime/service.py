"""
service.py - Startup sequence and steady state of the ingestion process.

Order matters:
1. Unique indexes (with duplicate repair) before anything is written
2. Rotated segments, oldest first
3. The live file as it stands at startup
4. Live tailing from where step 3 stopped, forever

Steps 2-4 share one IngestPipeline, so gap detection runs across the
boundary between historical and live data without resetting.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from ..config import IngestConfig
from .event_store import EventStore
from .history import LiveFilePosition, process_live_file, replay_history
from .log_tailer import LogTailer
from .pipeline import IngestPipeline

logger = logging.getLogger(__name__)


class IngestService:
    """Wires configuration, store, pipeline and tailer together."""

    def __init__(self, cfg: IngestConfig, store: EventStore):
        self.cfg = cfg
        self.store = store
        self.pipeline = IngestPipeline(
            store,
            strict=cfg.strict_parse,
            gap_threshold_seconds=cfg.gap_threshold_seconds,
        )

    def catch_up(self) -> Optional[LiveFilePosition]:
        """Ingest everything already on disk.

        Returns:
            Where the live file parse stopped, or None when historical
            processing is skipped and the tailer should pick its own start.
        """
        if self.cfg.skip_historical:
            logger.info("Skipping historical logs, tailing the live log only")
            return None

        replay_history(self.cfg.log_dir, self.cfg.main_log_name, self.pipeline.process_line)
        position = process_live_file(self.cfg.main_log_path, self.pipeline.process_line)
        logger.info("Processed %d bytes of live log %s", position.offset, self.cfg.main_log_path)
        return position

    def build_tailer(self) -> LogTailer:
        return LogTailer(
            self.cfg.main_log_path,
            self.pipeline.process_line,
            cursor_store=self.store if self.cfg.persist_tail_offset else None,
            use_polling=self.cfg.watch_polling,
        )

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Run the full ingestion sequence.

        Blocks until ``stop_event`` is set; without one, returns only by raising.

        Raises:
            EventStoreError: If the unique indexes cannot be established.
            TailerError: If the directory watch fails.
        """
        self.store.ensure_indexes()
        position = self.catch_up()

        tailer = self.build_tailer()
        if position is None:
            tailer.prime()
        else:
            tailer.prime(position.offset, start_inode=position.inode)
        tailer.run_forever(stop_event)
