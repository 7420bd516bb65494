"""Detect abnormally long intervals between consecutive commits."""

from __future__ import annotations

from typing import Optional

from .types import CommittedEvent, GapEvent

DEFAULT_GAP_THRESHOLD_SECONDS = 5.0


class GapDetector:
    """Tracks the last processed commit and reports slow blocks.

    Adjacency is by processing order, not by height. A single detector
    instance must see historical replay and live tailing in sequence so the
    first live commit is compared against the last historical one.
    """

    def __init__(self, threshold_seconds: float = DEFAULT_GAP_THRESHOLD_SECONDS):
        self.threshold_seconds = threshold_seconds
        self._last: Optional[CommittedEvent] = None

    @property
    def last_event(self) -> Optional[CommittedEvent]:
        return self._last

    def observe(self, event: CommittedEvent) -> Optional[GapEvent]:
        """Advance to ``event``; return a GapEvent if the interval qualifies."""
        previous = self._last
        self._last = event

        if previous is None:
            return None

        time_diff = (event.timestamp - previous.timestamp).total_seconds()
        if time_diff < self.threshold_seconds:
            return None

        return GapEvent(
            timestamp=event.timestamp,
            height=event.height,
            txs=event.txs,
            time_diff=time_diff,
            previous_height=previous.height,
        )
