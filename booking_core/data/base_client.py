# =============================================================================
# booking_core/data/base_client.py
# Remote client contract and change feeds
# =============================================================================
"""
Abstract interface for the remote backend.

A remote client exposes, per entity type:
    sync_up     idempotent bulk upsert keyed by identifier
    fetch_all   every record
    fetch_by_id one record or None
    delete      remove records by identifier
    subscribe   a fresh ChangeFeed of change signals

Transport failures raise RemoteUnavailable; payloads the backend refuses raise
RemoteRejected. Both are left to the caller to retry.
"""

from __future__ import annotations
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from booking_core.errors import BookingSyncError
from booking_core.logging import get_logger
from booking_core.models import Entity, EntityType, entity_from_record

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChangeNotification:
    """Signal that a remote table changed; carries no payload, subscribers re-fetch."""
    entity_type: EntityType
    event: str = "UPDATE"
    received_at: float = field(default_factory=time.time)


_END = object()


class ChangeFeed:
    """
    Blocking iterator over change notifications for one entity type.

    The feed ends (StopIteration) once closed. If the underlying listener dies
    the feed is failed and the next read raises that error.

    Usage:
        feed = remote.subscribe(EntityType.APPOINTMENT)
        for notification in feed:
            refresh()
        feed.close()
    """

    def __init__(self, entity_type: EntityType, on_close: Optional[Callable[[], None]] = None):
        self.entity_type = entity_type
        self._queue: queue.Queue = queue.Queue()
        self._on_close = on_close
        self._lock = threading.Lock()
        self._closed = False
        self._error: Optional[BookingSyncError] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def failed(self) -> bool:
        return self._error is not None

    def push(self, event: str = "UPDATE") -> None:
        """Queue a notification (ignored once the feed has ended)."""
        with self._lock:
            if self._closed or self._error is not None:
                return
            self._queue.put(ChangeNotification(self.entity_type, event))

    def fail(self, error: BookingSyncError) -> None:
        """Mark the feed dead; readers get the error after draining queued signals."""
        with self._lock:
            if self._closed or self._error is not None:
                return
            self._error = error
            self._queue.put(_END)

    def close(self) -> None:
        """End the feed and wake any blocked reader."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_END)
        if self._on_close is not None:
            self._on_close()

    def __iter__(self) -> ChangeFeed:
        return self

    def __next__(self) -> ChangeNotification:
        item = self._queue.get()
        if item is _END:
            # Keep the marker so every later read ends the same way
            self._queue.put(_END)
            if self._closed:
                raise StopIteration
            raise self._error
        return item

    def __enter__(self) -> ChangeFeed:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


class RemoteClient(ABC):
    """Abstract base class for remote backends."""

    name = "remote"

    @abstractmethod
    def sync_up(self, entity_type: EntityType, entities: Sequence[Entity]) -> int:
        """
        Upsert records keyed by identifier.

        Sending the same records twice leaves the backend unchanged the second time.

        Returns:
            Number of records sent
        """

    @abstractmethod
    def fetch_all(self, entity_type: EntityType) -> List[Entity]:
        """Every record of a type."""

    @abstractmethod
    def fetch_by_id(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        """One record, or None if the backend has no such identifier."""

    @abstractmethod
    def delete(self, entity_type: EntityType, entity_ids: Sequence[str]) -> int:
        """Remove records by identifier; unknown identifiers are ignored."""

    @abstractmethod
    def subscribe(self, entity_type: EntityType) -> ChangeFeed:
        """Open a new, independent change feed."""

    def close(self) -> None:
        """Release connections and end open feeds."""


def decode_records(entity_type: EntityType, rows: Sequence[Dict[str, Any]]) -> List[Entity]:
    """Decode wire rows; rows that cannot be decoded are logged and skipped."""
    entities = []
    for row in rows:
        try:
            entities.append(entity_from_record(entity_type, row))
        except ValueError as e:
            logger.warning(f"Skipping malformed {entity_type.table} record {row.get('id')!r}: {e}")
    return entities
