"""
log_tailer.py - Rotation-aware tailing of the live node log.

This module follows the live log file as the node appends to it:
- Watches the containing directory, not the file, because rotation
  replaces the file under the same name
- Reads only complete lines from the last byte offset
- Treats a create (or move onto the watched name) as rotation and restarts
  from offset 0 of the new file
- Treats a file shorter than the offset as truncation

watchdog delivers notifications on its observer thread. The handler only
enqueues them; run_forever() drains the queue on the calling thread, so
parsing and storage stay single-threaded.

Usage:
    from nodelog.runtime.log_tailer import LogTailer

    tailer = LogTailer(log_path, pipeline.process_line)
    tailer.prime()
    tailer.run_forever()
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Callable, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

if TYPE_CHECKING:
    from .event_store import EventStore

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]

CREATE = "create"
WRITE = "write"


class TailerError(Exception):
    """The directory watch could not be established or stopped unexpectedly."""

    pass


class _DirectoryEventHandler(FileSystemEventHandler):
    """Forwards notifications for one path in the watched directory."""

    def __init__(self, path: str, notifications: "queue.Queue[Tuple[str, str]]"):
        super().__init__()
        self._path = path
        self._notifications = notifications

    def _matches(self, raw_path) -> bool:
        return os.path.abspath(os.fsdecode(raw_path)) == self._path

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._notifications.put((CREATE, self._path))

    def on_moved(self, event: FileSystemEvent) -> None:
        # Rename onto the watched name is a rotation, like a create.
        if not event.is_directory and self._matches(event.dest_path):
            self._notifications.put((CREATE, self._path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._notifications.put((WRITE, self._path))


class LogTailer:
    """Follows one log file across rotations.

    Attributes:
        path: Absolute path of the live log file.
        offset: Bytes of the current file generation already fed to the sink.
    """

    def __init__(
        self,
        path: Path,
        sink: LineSink,
        cursor_store: Optional["EventStore"] = None,
        use_polling: bool = False,
    ):
        """Initialize the tailer.

        Args:
            path: Live log file to follow.
            sink: Receives each complete line, line ending stripped.
            cursor_store: If given, the offset is persisted after each read
                and restored by prime().
            use_polling: Use watchdog's PollingObserver instead of native
                filesystem notifications.
        """
        self.path = Path(os.path.abspath(path))
        self.offset = 0
        self._sink = sink
        self._cursor_store = cursor_store
        self._use_polling = use_polling
        self._file: Optional[BinaryIO] = None
        self._inode: Optional[int] = None
        self._notifications: "queue.Queue[Tuple[str, str]]" = queue.Queue()
        self._observer = None

    # =========================================================================
    # File handle management
    # =========================================================================

    def _open(self) -> bool:
        """Open the live file positioned at the current offset."""
        try:
            handle = self.path.open("rb")
        except OSError as e:
            logger.warning("Failed to open log file %s: %s", self.path, e)
            self._file = None
            self._inode = None
            return False

        self._file = handle
        self._inode = os.fstat(handle.fileno()).st_ino
        handle.seek(self.offset)
        return True

    def _close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._inode = None

    def prime(self, start_offset: Optional[int] = None, start_inode: Optional[int] = None) -> None:
        """Position the tailer before watching starts.

        Args:
            start_offset: Bytes already consumed by the startup full parse.
                If None, a persisted cursor for the same file generation is
                used, falling back to the current end of file.
            start_inode: Inode of the file the startup parse read. If the
                path now holds another file, the tailer starts at its
                beginning instead of at ``start_offset``.
        """
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            logger.info("Log file %s does not exist yet, waiting for it", self.path)
            self.offset = 0
            return

        if start_offset is None:
            self.offset = self._restored_offset(stat.st_ino, stat.st_size)
        elif start_inode is not None and start_inode != stat.st_ino:
            logger.warning(
                "Log file %s was rotated after the startup parse, starting the new file from 0",
                self.path,
            )
            self.offset = 0
        else:
            self.offset = min(start_offset, stat.st_size)
        self._open()

    def _restored_offset(self, inode: int, size: int) -> int:
        if self._cursor_store is None:
            return size
        stored = self._cursor_store.get_tail_cursor(str(self.path))
        if stored is None:
            return size
        stored_inode, stored_offset = stored
        if stored_inode != inode or stored_offset > size:
            logger.info("Stored tail cursor for %s is for another file generation", self.path)
            return size
        logger.info("Resuming %s from stored offset %d (size %d)", self.path, stored_offset, size)
        return stored_offset

    # =========================================================================
    # Notification handlers
    # =========================================================================

    def handle_create(self) -> None:
        """The watched path was recreated: start over on the new file."""
        if self._file is not None and self._current_inode() == self._inode:
            # Already switched to this generation on an earlier write
            self.handle_write()
            return
        logger.info("Log file %s was created (likely rotated), reopening", self.path)
        self._switch_generation()

    def handle_write(self) -> None:
        """The watched path was written: consume newly completed lines."""
        if self._file is None and not self._open():
            return

        try:
            stat = self.path.stat()
        except FileNotFoundError:
            logger.warning("Log file %s disappeared before it could be read", self.path)
            return

        if stat.st_ino != self._inode:
            logger.info("Log file %s was replaced without a create notification, reopening", self.path)
            self._switch_generation()
        elif stat.st_size < self.offset:
            logger.warning(
                "Log file %s truncated (size %d < offset %d), reading from start",
                self.path,
                stat.st_size,
                self.offset,
            )
            self.offset = 0

        if self._read_available():
            self._save_cursor()

    def _current_inode(self) -> Optional[int]:
        try:
            return self.path.stat().st_ino
        except FileNotFoundError:
            return None

    def _switch_generation(self) -> None:
        if self._file is not None:
            # Lines written to the old generation before the rename
            self._read_available()
        self._close()
        self.offset = 0
        if self._open():
            self._save_cursor()

    def _read_available(self) -> int:
        """Feed complete lines after the offset to the sink; return bytes read."""
        if self._file is None:
            return 0
        start = self.offset
        try:
            self._file.seek(self.offset)
            for raw in self._file:
                if not raw.endswith(b"\n"):
                    break
                self.offset += len(raw)
                self._sink(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        except OSError as e:
            logger.warning("Error reading log file %s at offset %d: %s", self.path, self.offset, e)
        return self.offset - start

    def _save_cursor(self) -> None:
        if self._cursor_store is not None and self._inode is not None:
            self._cursor_store.set_tail_cursor(str(self.path), self._inode, self.offset)

    def dispatch(self, kind: str) -> None:
        if kind == CREATE:
            self.handle_create()
        elif kind == WRITE:
            self.handle_write()

    # =========================================================================
    # Watch loop
    # =========================================================================

    def start(self) -> None:
        """Start watching the containing directory.

        Raises:
            TailerError: If the watch cannot be established.
        """
        if not self.path.parent.is_dir():
            raise TailerError(f"Log directory {self.path.parent} does not exist")

        handler = _DirectoryEventHandler(str(self.path), self._notifications)
        observer = PollingObserver() if self._use_polling else Observer()
        try:
            observer.schedule(handler, str(self.path.parent), recursive=False)
            observer.start()
        except OSError as e:
            raise TailerError(f"Failed to watch directory {self.path.parent}: {e}") from e
        self._observer = observer
        logger.info("Watching log file %s", self.path)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self._close()

    def run_forever(
        self,
        stop_event: Optional[threading.Event] = None,
        poll_interval: float = 1.0,
    ) -> None:
        """Process notifications until ``stop_event`` is set.

        Without a stop event this only returns by raising.

        Raises:
            TailerError: If the watch cannot start or the observer dies.
        """
        self.start()
        try:
            while stop_event is None or not stop_event.is_set():
                try:
                    kind, _ = self._notifications.get(timeout=poll_interval)
                except queue.Empty:
                    if self._observer is None or not self._observer.is_alive():
                        raise TailerError(f"Directory watch on {self.path.parent} stopped")
                    continue
                self.dispatch(kind)
        finally:
            self.stop()
