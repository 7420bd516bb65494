"""
event_store.py - Idempotent MongoDB persistence for committed-state events.

This module stores CommittedEvent and GapEvent documents so that each block
height appears at most once per collection, no matter how many times the
same log content is ingested.

Design Philosophy:
    - The node log on disk is the source of truth
    - A unique index on ``height`` is the only defense against duplicates
      from overlapping historical and live reads, so ingestion must not
      start without it
    - Inserts are insert-or-ignore: a duplicate key is success, not an error
    - Any other write failure drops that single event and keeps going

Usage:
    from nodelog.runtime.event_store import connect_event_store

    store = connect_event_store("mongodb://localhost:27017", "node_logs")
    store.ensure_indexes()
    store.insert_committed(event)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from .types import (
    BLOCK_TIME_GAP_COLLECTION,
    COMMITTED_STATE_COLLECTION,
    INGESTION_STATE_COLLECTION,
    CommittedEvent,
    GapEvent,
    InsertOutcome,
)

logger = logging.getLogger(__name__)

UNIQUE_KEY_FIELD = "height"

# Server error codes
_DUPLICATE_KEY_CODES = frozenset({11000, 11001, 12582})
_INDEX_CONFLICT_CODES = frozenset({85, 86})  # IndexOptionsConflict, IndexKeySpecsConflict


class EventStoreError(Exception):
    """Fatal storage failure; ingestion must not proceed."""

    pass


def _is_duplicate_key_error(exc: PyMongoError) -> bool:
    if isinstance(exc, DuplicateKeyError):
        return True
    if isinstance(exc, OperationFailure) and exc.code in _DUPLICATE_KEY_CODES:
        return True
    return "E11000" in str(exc)


def _is_index_conflict(exc: PyMongoError) -> bool:
    if isinstance(exc, OperationFailure) and exc.code in _INDEX_CONFLICT_CODES:
        return True
    message = str(exc)
    return "IndexOptionsConflict" in message or "already exists" in message


def remove_duplicates(collection: Collection, field_name: str) -> int:
    """Delete all but the first document for every duplicated ``field_name``.

    Which duplicate survives is whichever the server lists first in the
    grouped ``_id`` array.

    Returns:
        Number of documents deleted.
    """
    pipeline = [
        {
            "$group": {
                "_id": f"${field_name}",
                "ids": {"$push": "$_id"},
                "count": {"$sum": 1},
            }
        },
        {"$match": {"count": {"$gt": 1}}},
    ]

    deleted = 0
    for group in collection.aggregate(pipeline):
        extra_ids = group.get("ids", [])[1:]
        if not extra_ids:
            continue
        try:
            result = collection.delete_many({"_id": {"$in": extra_ids}})
            deleted += result.deleted_count
        except PyMongoError as e:
            logger.warning(
                "Failed to delete duplicate %s=%r in %s: %s",
                field_name,
                group.get("_id"),
                collection.name,
                e,
            )

    if deleted:
        logger.info("Removed %d duplicate documents from %s", deleted, collection.name)
    return deleted


def create_unique_index(collection: Collection, field_name: str = UNIQUE_KEY_FIELD) -> None:
    """Ensure a unique ascending index on ``field_name``, repairing duplicates.

    Raises:
        EventStoreError: If the index cannot be established.
    """
    keys = [(field_name, ASCENDING)]
    try:
        collection.create_index(keys, unique=True)
    except PyMongoError as e:
        if _is_duplicate_key_error(e):
            logger.warning(
                "Collection %s has duplicate %s values, removing duplicates",
                collection.name,
                field_name,
            )
            try:
                remove_duplicates(collection, field_name)
            except PyMongoError as repair_error:
                raise EventStoreError(
                    f"Duplicate removal on {collection.name}.{field_name} failed: {repair_error}"
                ) from repair_error
            try:
                collection.create_index(keys, unique=True)
            except PyMongoError as retry_error:
                raise EventStoreError(
                    f"Unique index on {collection.name}.{field_name} still failing "
                    f"after duplicate removal: {retry_error}"
                ) from retry_error
        elif _is_index_conflict(e):
            logger.info("Index on %s.%s already exists", collection.name, field_name)
            return
        else:
            raise EventStoreError(
                f"Failed to create unique index on {collection.name}.{field_name}: {e}"
            ) from e

    logger.info("Unique index on %s.%s is ready", collection.name, field_name)


class EventStore:
    """MongoDB-backed store with insert-or-ignore semantics.

    Only the ingestion loop writes, so no locking is done here.

    Attributes:
        database: The pymongo Database holding the collections.
    """

    def __init__(self, database: Database, client: Optional[MongoClient] = None):
        self.database = database
        self._client = client
        self.committed = database[COMMITTED_STATE_COLLECTION]
        self.gaps = database[BLOCK_TIME_GAP_COLLECTION]
        self.ingestion_state = database[INGESTION_STATE_COLLECTION]

    def ensure_indexes(self) -> None:
        """Create the unique ``height`` indexes for both event collections.

        Must run before any ingestion.

        Raises:
            EventStoreError: If either index cannot be established.
        """
        logger.info("Ensuring MongoDB indexes exist...")
        create_unique_index(self.committed, UNIQUE_KEY_FIELD)
        create_unique_index(self.gaps, UNIQUE_KEY_FIELD)
        logger.info("MongoDB indexes are ready.")

    def _insert(self, collection: Collection, document: Dict[str, Any]) -> InsertOutcome:
        try:
            collection.insert_one(document)
        except PyMongoError as e:
            if _is_duplicate_key_error(e):
                return InsertOutcome.DUPLICATE
            logger.warning(
                "Failed to write %s=%r to %s: %s",
                UNIQUE_KEY_FIELD,
                document.get(UNIQUE_KEY_FIELD),
                collection.name,
                e,
            )
            return InsertOutcome.FAILED
        return InsertOutcome.INSERTED

    def insert_committed(self, event: CommittedEvent) -> InsertOutcome:
        return self._insert(self.committed, event.to_document())

    def insert_gap(self, gap: GapEvent) -> InsertOutcome:
        return self._insert(self.gaps, gap.to_document())

    # =========================================================================
    # Tail cursor
    # =========================================================================

    def get_tail_cursor(self, path: str) -> Optional[Tuple[int, int]]:
        """Get the stored (inode, byte_offset) for a live log path."""
        doc = self.ingestion_state.find_one({"_id": path})
        if doc is None:
            return None
        return (int(doc.get("inode", 0)), int(doc.get("offset", 0)))

    def set_tail_cursor(self, path: str, inode: int, offset: int) -> None:
        """Record how far the live log has been consumed."""
        try:
            self.ingestion_state.update_one(
                {"_id": path},
                {"$set": {"inode": inode, "offset": offset}},
                upsert=True,
            )
        except PyMongoError as e:
            logger.warning("Failed to persist tail cursor for %s: %s", path, e)

    # =========================================================================
    # Queries
    # =========================================================================

    def count_committed(self) -> int:
        return self.committed.count_documents({})

    def count_gaps(self) -> int:
        return self.gaps.count_documents({})

    def latest_committed(self, limit: int = 5) -> List[CommittedEvent]:
        """Most recent commits by height, highest first."""
        cursor = self.committed.find({}).sort(UNIQUE_KEY_FIELD, DESCENDING).limit(limit)
        return [CommittedEvent.from_document(doc) for doc in cursor]

    def recent_gaps(self, limit: int = 5) -> List[GapEvent]:
        """Most recent gaps by height, highest first."""
        cursor = self.gaps.find({}).sort(UNIQUE_KEY_FIELD, DESCENDING).limit(limit)
        return [GapEvent.from_document(doc) for doc in cursor]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def connect_event_store(uri: str, database_name: str) -> EventStore:
    """Connect to MongoDB and verify the server is reachable.

    Raises:
        EventStoreError: If the server cannot be reached.
    """
    client: Optional[MongoClient] = None
    try:
        client = MongoClient(uri)
        client.admin.command("ping")
    except PyMongoError as e:
        if client is not None:
            client.close()
        raise EventStoreError(f"Cannot connect to MongoDB at {uri}: {e}") from e

    logger.info("Connected to MongoDB, database %s", database_name)
    return EventStore(client[database_name], client=client)
