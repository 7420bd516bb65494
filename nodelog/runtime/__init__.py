# nodelog/runtime package
# Incremental ingestion of node commit logs.
#
# Core components:
#   - line_parser: raw line -> CommittedEvent
#   - gap_detector: slow-block detection across consecutive commits
#   - event_store: idempotent MongoDB persistence and duplicate repair
#   - history: ordered replay of rotated log segments
#   - log_tailer: rotation-aware live tailing via watchdog
#   - pipeline / service: wiring for one ingestion process
#
# Usage:
#     from nodelog.runtime import IngestService, connect_event_store
#     store = connect_event_store(uri, "node_logs")
#     IngestService(cfg, store).run()

from .event_store import EventStore, EventStoreError, connect_event_store
from .gap_detector import GapDetector
from .line_parser import LineParseError, parse_line
from .log_tailer import LogTailer, TailerError
from .pipeline import IngestPipeline
from .service import IngestService
from .types import CommittedEvent, GapEvent, InsertOutcome

__all__ = [
    # Types
    "CommittedEvent",
    "GapEvent",
    "InsertOutcome",
    # Components
    "parse_line",
    "LineParseError",
    "GapDetector",
    "EventStore",
    "EventStoreError",
    "connect_event_store",
    "LogTailer",
    "TailerError",
    "IngestPipeline",
    "IngestService",
]
