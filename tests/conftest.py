"""
Shared fixtures for nodelog tests.

MongoDB is replaced by mongomock so the suite needs no running server.
"""

from datetime import datetime, timedelta, timezone

import mongomock
import pytest

from nodelog.config.runtime_config import reset_config
from nodelog.runtime.event_store import EventStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def commit_line(
    seconds: float,
    height: int,
    txs: int = 1,
    app_hash: str = "ABC123",
    module: str = "state",
) -> str:
    """Build a Committed State log line ``seconds`` after BASE_TIME."""
    ts = BASE_TIME + timedelta(seconds=seconds)
    stamp = ts.strftime("%Y-%m-%d|%H:%M:%S.") + f"{ts.microsecond // 1000:03d}"
    return (
        f"I[{stamp}] Committed State                            "
        f"module={module} height={height} txs={txs} appHash={app_hash}"
    )


def write_lines(path, lines, mode="w"):
    with open(path, mode, encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")


@pytest.fixture
def mongo_db():
    """Fresh in-memory database per test."""
    client = mongomock.MongoClient()
    yield client["node_logs"]
    client.close()


@pytest.fixture
def store(mongo_db):
    return EventStore(mongo_db)


@pytest.fixture
def indexed_store(store):
    store.ensure_indexes()
    return store


@pytest.fixture
def log_dir(tmp_path):
    directory = tmp_path / "logs"
    directory.mkdir()
    return directory


@pytest.fixture(autouse=True)
def _reset_runtime_config():
    reset_config()
    yield
    reset_config()
