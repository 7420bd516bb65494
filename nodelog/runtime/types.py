"""Record types for committed-state ingestion.

This module contains the two document shapes written to MongoDB and their
converters. Stored field names are camelCase to match the collections the
node's tooling already queries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

# Value substituted for a timestamp that fails to parse.
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

COMMITTED_STATE_COLLECTION = "committed_state"
BLOCK_TIME_GAP_COLLECTION = "block_time_gap"
INGESTION_STATE_COLLECTION = "ingestion_state"


class InsertOutcome(str, Enum):
    """Result of an insert-or-ignore write."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"  # Natural key already stored; treated as success
    FAILED = "failed"


@dataclass(frozen=True)
class CommittedEvent:
    """A single "Committed State" line from the node log.

    Attributes:
        timestamp: When the node committed the block (UTC).
        module: Source subsystem name.
        height: Block height; the natural unique key.
        txs: Number of transactions in the block.
        app_hash: Application hash after the commit.
    """

    timestamp: datetime
    module: str
    height: int
    txs: int
    app_hash: str

    def to_document(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "module": self.module,
            "height": self.height,
            "txs": self.txs,
            "appHash": self.app_hash,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CommittedEvent":
        return cls(
            timestamp=_as_utc(doc.get("timestamp", ZERO_TIME)),
            module=doc.get("module", ""),
            height=int(doc.get("height", 0)),
            txs=int(doc.get("txs", 0)),
            app_hash=doc.get("appHash", ""),
        )


@dataclass(frozen=True)
class GapEvent:
    """Two consecutive commits separated by at least the gap threshold.

    timestamp, height and txs are copied from the later commit.
    """

    timestamp: datetime
    height: int
    txs: int
    time_diff: float
    previous_height: int

    def to_document(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "height": self.height,
            "txs": self.txs,
            "timeDiff": self.time_diff,
            "previousHeight": self.previous_height,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "GapEvent":
        return cls(
            timestamp=_as_utc(doc.get("timestamp", ZERO_TIME)),
            height=int(doc.get("height", 0)),
            txs=int(doc.get("txs", 0)),
            time_diff=float(doc.get("timeDiff", 0.0)),
            previous_height=int(doc.get("previousHeight", 0)),
        )


def _as_utc(value: datetime) -> datetime:
    """pymongo returns naive datetimes that are implicitly UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
