"""
history.py - Replay rotated log segments before live tailing starts.

The node rotates ``stdout-xx.txt`` to ``stdout-xx.txt.1``, ``.2`` and so on.
Segments are replayed oldest-first by numeric suffix so the gap detector
sees commits in the order they were written. Replaying content that is
already stored is harmless because the event store ignores duplicate heights.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]


@dataclass
class HistoryReplayStats:
    """Outcome of one historical replay."""

    files_processed: int = 0
    files_skipped: List[str] = field(default_factory=list)
    bytes_read: int = 0


@dataclass(frozen=True)
class LiveFilePosition:
    """Where the startup parse of the live file stopped."""

    offset: int = 0
    inode: Optional[int] = None


def _segment_pattern(live_name: str) -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(live_name)}\.(\d+)$")


def list_rotated_segments(log_dir: Path, live_name: str) -> List[Path]:
    """List ``<live_name>.<N>`` files in ``log_dir``, sorted by N ascending.

    Raises:
        OSError: If ``log_dir`` cannot be listed.
    """
    pattern = _segment_pattern(live_name)
    segments = []
    for entry in log_dir.iterdir():
        match = pattern.match(entry.name)
        if match and not entry.is_dir():
            segments.append((int(match.group(1)), entry))
    segments.sort(key=lambda item: item[0])
    return [path for _, path in segments]


def _feed_lines(f: BinaryIO, path: Path, sink: LineSink, complete_lines_only: bool) -> int:
    consumed = 0
    for raw in f:
        if complete_lines_only and not raw.endswith(b"\n"):
            logger.debug("Holding back partial line in %s (%d bytes)", path, len(raw))
            break
        consumed += len(raw)
        sink(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
    return consumed


def _read_lines(path: Path, sink: LineSink, complete_lines_only: bool) -> int:
    with path.open("rb") as f:
        return _feed_lines(f, path, sink, complete_lines_only)


def process_file(path: Path, sink: LineSink, complete_lines_only: bool = False) -> int:
    """Feed every line of ``path`` to ``sink``.

    Args:
        path: File to read from the beginning.
        sink: Receives each line with its line ending stripped.
        complete_lines_only: Stop before an unterminated final line. Used for
            the live file, whose last line may still be mid-write; the tailer
            picks it up once it is complete.

    Returns:
        Number of bytes consumed (0 if the file does not exist).
    """
    try:
        return _read_lines(path, sink, complete_lines_only)
    except FileNotFoundError:
        return 0
    except OSError as e:
        logger.warning("Failed to read log file %s: %s", path, e)
        return 0


def process_live_file(path: Path, sink: LineSink) -> LiveFilePosition:
    """Full parse of the live file at startup.

    An unterminated final line is held back. The returned position records
    the inode of the file that was read so the tailer can tell whether the
    path was rotated before it took over.
    """
    try:
        with path.open("rb") as f:
            inode = os.fstat(f.fileno()).st_ino
            return LiveFilePosition(_feed_lines(f, path, sink, complete_lines_only=True), inode)
    except FileNotFoundError:
        return LiveFilePosition()
    except OSError as e:
        logger.warning("Failed to read log file %s: %s", path, e)
        return LiveFilePosition()


def replay_history(log_dir: Path, live_name: str, sink: LineSink) -> HistoryReplayStats:
    """Replay all rotated segments of ``live_name`` in order.

    A missing or unreadable directory is logged and yields empty stats so
    startup can continue with the live file. Segments that cannot be read
    are logged and skipped.
    """
    stats = HistoryReplayStats()
    logger.info("Processing historical log files in %s...", log_dir)

    try:
        segments = list_rotated_segments(log_dir, live_name)
    except OSError as e:
        logger.warning("Cannot read log directory %s: %s", log_dir, e)
        return stats

    for segment in segments:
        logger.info("Processing historical file %s", segment)
        try:
            stats.bytes_read += _read_lines(segment, sink, complete_lines_only=False)
        except OSError as e:
            logger.warning("Cannot read historical file %s: %s", segment, e)
            stats.files_skipped.append(segment.name)
            continue
        stats.files_processed += 1

    logger.info(
        "Historical replay complete: %d files, %d skipped, %d bytes",
        stats.files_processed,
        len(stats.files_skipped),
        stats.bytes_read,
    )
    return stats
