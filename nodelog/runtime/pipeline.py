"""
pipeline.py - Line sink shared by historical replay and live tailing.

Each line goes through parse -> store -> gap detection. One pipeline instance
owns the GapDetector for the life of the process, so the comparison state
built up during historical replay carries straight into live tailing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .event_store import EventStore
from .gap_detector import DEFAULT_GAP_THRESHOLD_SECONDS, GapDetector
from .line_parser import LineParseError, parse_line
from .types import InsertOutcome

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    """Running counters for one pipeline instance."""

    lines_seen: int = 0
    events_parsed: int = 0
    events_inserted: int = 0
    events_duplicate: int = 0
    events_failed: int = 0
    parse_errors: int = 0
    gaps_inserted: int = 0


class IngestPipeline:
    """Parses lines, stores committed events and their derived gaps.

    Attributes:
        store: Destination for both event types.
        detector: Gap state, advanced on every parsed event.
        strict: Drop lines with malformed fields instead of zero-filling them.
    """

    def __init__(
        self,
        store: EventStore,
        detector: Optional[GapDetector] = None,
        strict: bool = False,
        gap_threshold_seconds: float = DEFAULT_GAP_THRESHOLD_SECONDS,
    ):
        self.store = store
        self.detector = detector or GapDetector(gap_threshold_seconds)
        self.strict = strict
        self.stats = PipelineStats()

    def process_line(self, line: str) -> None:
        """Handle one raw log line. Never raises for per-line problems."""
        self.stats.lines_seen += 1

        try:
            event = parse_line(line, strict=self.strict)
        except LineParseError as e:
            self.stats.parse_errors += 1
            logger.warning("Dropping malformed committed-state line: %s", e)
            return

        if event is None:
            return
        self.stats.events_parsed += 1

        outcome = self.store.insert_committed(event)
        if outcome is InsertOutcome.INSERTED:
            self.stats.events_inserted += 1
        elif outcome is InsertOutcome.DUPLICATE:
            self.stats.events_duplicate += 1
        else:
            self.stats.events_failed += 1

        gap = self.detector.observe(event)
        if gap is None:
            return

        if self.store.insert_gap(gap) is InsertOutcome.INSERTED:
            self.stats.gaps_inserted += 1
            logger.info(
                "Block time gap of %.2fs (height %d -> %d, txs: %d)",
                gap.time_diff,
                gap.previous_height,
                gap.height,
                gap.txs,
            )
