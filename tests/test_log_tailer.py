"""Tests for rotation-aware live log tailing.

These tests verify that:
1. Priming skips content already processed at startup
3. A replaced file restarts from offset 0, whether seen by create or write
3. A create notification restarts from offset 0 of the new file
4. Truncation is detected and the file is re-read from the start
5. Notifications for other files are ignored
6. The watch loop delivers lines end-to-end and fails loudly
"""

import os
import queue
import threading
import time

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from conftest import write_lines

from nodelog.runtime.log_tailer import (
    CREATE,
    WRITE,
    LogTailer,
    TailerError,
    _DirectoryEventHandler,
)


@pytest.fixture
def live_path(log_dir):
    return log_dir / "stdout-xx.txt"


def _tailer(path, **kwargs):
    seen = []
    return LogTailer(path, seen.append, **kwargs), seen


class TestPrime:
    def test_starts_at_end_of_file(self, live_path):
        write_lines(live_path, ["old-1", "old-2"])
        tailer, seen = _tailer(live_path)

        tailer.prime()
        write_lines(live_path, ["new-1"], mode="a")
        tailer.handle_write()

        assert seen == ["new-1"]
        tailer.stop()

    def test_start_offset_from_startup_parse(self, live_path):
        live_path.write_bytes(b"done\nnot-yet\n")
        tailer, seen = _tailer(live_path)

        tailer.prime(start_offset=len(b"done\n"))
        tailer.handle_write()

        assert seen == ["not-yet"]
        tailer.stop()

    def test_start_offset_ignored_for_replaced_file(self, live_path):
        live_path.write_bytes(b"parsed\n")
        parsed_inode = os.stat(live_path).st_ino
        live_path.rename(live_path.with_name("stdout-xx.txt.1"))
        live_path.write_bytes(b"fresh-1\nfresh-2\n")
        tailer, seen = _tailer(live_path)

        tailer.prime(start_offset=len(b"parsed\n"), start_inode=parsed_inode)
        tailer.handle_write()

        assert seen == ["fresh-1", "fresh-2"]
        tailer.stop()

    def test_missing_file_waits_for_create(self, live_path):
        tailer, seen = _tailer(live_path)
        tailer.prime()
        assert tailer.offset == 0

        write_lines(live_path, ["first"])
        tailer.handle_create()
        tailer.handle_write()

        assert seen == ["first"]
        tailer.stop()

    def test_restores_persisted_cursor(self, live_path, store):
        live_path.write_bytes(b"a\nb\nc\n")
        inode = os.stat(live_path).st_ino
        tailer, seen = _tailer(live_path, cursor_store=store)
        store.set_tail_cursor(str(tailer.path), inode, 2)

        tailer.prime()
        tailer.handle_write()

        assert seen == ["b", "c"]
        assert store.get_tail_cursor(str(tailer.path)) == (inode, 6)
        tailer.stop()

    def test_ignores_cursor_for_other_generation(self, live_path, store):
        live_path.write_bytes(b"a\nb\n")
        inode = os.stat(live_path).st_ino
        tailer, _ = _tailer(live_path, cursor_store=store)
        store.set_tail_cursor(str(tailer.path), inode + 1, 0)

        tailer.prime()

        assert tailer.offset == 4
        tailer.stop()


class TestHandleWrite:
    def test_partial_line_held_back(self, live_path):
        live_path.write_bytes(b"")
        tailer, seen = _tailer(live_path)
        tailer.prime()

        with open(live_path, "ab") as f:
            f.write(b"I[2024-01-01|00:00:05.000] Committed")
        tailer.handle_write()
        assert seen == []
        assert tailer.offset == 0

        with open(live_path, "ab") as f:
            f.write(b" State module=x\n")
        tailer.handle_write()

        assert seen == ["I[2024-01-01|00:00:05.000] Committed State module=x"]
        tailer.stop()

    def test_offset_advances(self, live_path):
        live_path.write_bytes(b"")
        tailer, seen = _tailer(live_path)
        tailer.prime()

        write_lines(live_path, ["one", "two"], mode="a")
        tailer.handle_write()
        tailer.handle_write()

        assert seen == ["one", "two"]
        assert tailer.offset == len(b"one\ntwo\n")
        tailer.stop()

    def test_truncation_rereads_from_start(self, live_path):
        write_lines(live_path, ["a long line before truncation", "another"])
        tailer, seen = _tailer(live_path)
        tailer.prime()

        write_lines(live_path, ["fresh"])
        tailer.handle_write()

        assert seen == ["fresh"]
        tailer.stop()

    def test_file_disappeared(self, live_path):
        write_lines(live_path, ["a"])
        tailer, seen = _tailer(live_path)
        tailer.prime()

        live_path.unlink()
        tailer.handle_write()

        assert seen == []
        tailer.stop()


class TestRotation:
    def test_create_resets_to_new_file(self, live_path):
        """Lines written to the new file before the create is seen are not lost."""
        write_lines(live_path, ["old-1"])
        tailer, seen = _tailer(live_path)
        tailer.prime()

        write_lines(live_path, ["old-2"], mode="a")
        live_path.rename(live_path.with_name("stdout-xx.txt.1"))
        write_lines(live_path, ["new-1", "new-2"])

        tailer.handle_create()
        assert tailer.offset == 0
        tailer.handle_write()

        assert seen == ["old-2", "new-1", "new-2"]
        tailer.stop()

    def test_rotation_seen_only_through_write(self, live_path):
        """A replaced file is followed even if its create notification never arrives."""
        write_lines(live_path, ["old-1", "old-2"])
        tailer, seen = _tailer(live_path)
        tailer.prime()

        live_path.rename(live_path.with_name("stdout-xx.txt.1"))
        write_lines(live_path, ["new-1"])
        tailer.handle_write()
        write_lines(live_path, [f"new-{i}" for i in range(2, 8)], mode="a")
        tailer.handle_write()

        assert seen == [f"new-{i}" for i in range(1, 8)]
        tailer.stop()

    def test_late_create_after_write_switch_does_not_reread(self, live_path):
        write_lines(live_path, ["old-1"])
        tailer, seen = _tailer(live_path)
        tailer.prime()

        live_path.rename(live_path.with_name("stdout-xx.txt.1"))
        write_lines(live_path, ["new-1"])
        tailer.handle_write()
        tailer.handle_create()

        assert seen == ["new-1"]
        assert tailer.offset == len(b"new-1\n")
        tailer.stop()

    def test_dispatch(self, live_path):
        write_lines(live_path, ["x"])
        tailer, seen = _tailer(live_path)
        tailer.prime()
        live_path.unlink()
        write_lines(live_path, ["y"])

        tailer.dispatch(CREATE)
        tailer.dispatch(WRITE)

        assert seen == ["y"]
        tailer.stop()


class TestDirectoryEventHandler:
    def test_routes_only_watched_path(self, live_path):
        notifications = queue.Queue()
        handler = _DirectoryEventHandler(str(live_path), notifications)
        other = str(live_path.with_name("other.txt"))

        handler.dispatch(FileCreatedEvent(str(live_path)))
        handler.dispatch(FileModifiedEvent(str(live_path)))
        handler.dispatch(FileModifiedEvent(other))
        handler.dispatch(FileCreatedEvent(other))
        handler.dispatch(DirModifiedEvent(str(live_path.parent)))
        handler.dispatch(FileMovedEvent(other, str(live_path)))
        handler.dispatch(FileMovedEvent(str(live_path), other))

        received = []
        while not notifications.empty():
            received.append(notifications.get_nowait()[0])
        assert received == [CREATE, WRITE, CREATE]


class TestRunForever:
    def test_missing_directory_is_fatal(self, tmp_path):
        tailer, _ = _tailer(tmp_path / "absent" / "stdout-xx.txt")

        with pytest.raises(TailerError):
            tailer.run_forever(threading.Event())

    def test_polling_watch_delivers_lines(self, live_path):
        live_path.write_bytes(b"")
        tailer, seen = _tailer(live_path, use_polling=True)
        tailer.prime()
        stop = threading.Event()
        thread = threading.Thread(
            target=tailer.run_forever, args=(stop,), kwargs={"poll_interval": 0.1}
        )
        thread.start()
        try:
            # Give the polling observer time to take its first snapshot
            time.sleep(1.5)
            write_lines(live_path, ["appended"], mode="a")

            deadline = time.monotonic() + 10
            while not seen and time.monotonic() < deadline:
                time.sleep(0.1)
        finally:
            stop.set()
            thread.join(timeout=10)

        assert seen == ["appended"]
        assert not thread.is_alive()
