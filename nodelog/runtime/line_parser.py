"""
line_parser.py - Extract committed-state records from node log lines.

Only one line shape is recognised:

    I[2024-01-01|00:00:05.000] Committed State module=state height=10 txs=3 appHash=ABC

Everything else is ignored without logging, since the node log is mostly
unrelated output.

Field parsing follows the node tooling's historical behavior: a timestamp or
integer that fails to parse becomes its zero value rather than rejecting the
line. Callers that prefer to drop such lines pass ``strict=True`` and get a
LineParseError instead.

Usage:
    from nodelog.runtime.line_parser import parse_line

    event = parse_line(raw_line)
    if event is not None:
        store.insert_committed(event)
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import List, Optional

from .types import ZERO_TIME, CommittedEvent

COMMITTED_STATE_PATTERN = re.compile(
    r"I\[(.*?)\] Committed State\s+module=(.*?)\s+height=(.*?)\s+txs=(.*?)\s+appHash=(.*)"
)

TIMESTAMP_FORMAT = "%Y-%m-%d|%H:%M:%S.%f"

_TIMESTAMP_SHAPE = re.compile(r"\d{4}-\d{2}-\d{2}\|\d{1,2}:\d{2}:\d{2}\.\d{3}")
_INTEGER_SHAPE = re.compile(r"[+-]?\d+")

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class LineParseError(ValueError):
    """A committed-state line matched but one of its fields did not parse."""

    def __init__(self, line: str, problems: List[str]):
        self.line = line
        self.problems = problems
        super().__init__("; ".join(problems))


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse ``YYYY-MM-DD|HH:MM:SS.mmm`` (hour may be one digit) as a UTC datetime, or None."""
    if not _TIMESTAMP_SHAPE.fullmatch(value):
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_int64(value: str) -> Optional[int]:
    """Parse a base-10 signed 64-bit integer, or None."""
    if not _INTEGER_SHAPE.fullmatch(value):
        return None
    number = int(value)
    if number < _INT64_MIN or number > _INT64_MAX:
        return None
    return number


def parse_line(line: str, strict: bool = False) -> Optional[CommittedEvent]:
    """Parse one raw log line into a CommittedEvent.

    Args:
        line: A single log line, with or without its trailing newline.
        strict: Raise LineParseError instead of zero-filling bad fields.

    Returns:
        The parsed event, or None when the line is not a committed-state line.

    Raises:
        LineParseError: In strict mode, when a matched line has a bad field.
    """
    match = COMMITTED_STATE_PATTERN.search(line)
    if match is None:
        return None

    raw_ts, module, raw_height, raw_txs, raw_hash = match.groups()

    timestamp = parse_timestamp(raw_ts)
    height = parse_int64(raw_height)
    txs = parse_int64(raw_txs)

    if strict:
        problems = []
        if timestamp is None:
            problems.append(f"bad timestamp {raw_ts!r}")
        if height is None:
            problems.append(f"bad height {raw_height!r}")
        if txs is None:
            problems.append(f"bad txs {raw_txs!r}")
        if problems:
            raise LineParseError(line, problems)

    return CommittedEvent(
        timestamp=timestamp if timestamp is not None else ZERO_TIME,
        module=module,
        height=height if height is not None else 0,
        txs=txs if txs is not None else 0,
        app_hash=raw_hash.strip(),
    )
