# =============================================================================
# booking_core/data/memory_client.py
# In-process remote backend (local-only mode and tests)
# =============================================================================
"""
InMemoryRemoteClient - a remote backend that lives in the current process.

Records are kept in wire form, so every write and read goes through the same
codec as the Supabase client. Every write notifies the open change feeds of
its type.

Failure switches for exercising error paths:
    unavailable        entity types whose calls raise RemoteUnavailable
    rejected_ids       identifiers that make sync_up raise RemoteRejected
    fail_feeds(type)   kill the open feeds of a type
"""

from __future__ import annotations
import threading
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from booking_core.errors import RemoteRejected, RemoteUnavailable
from booking_core.logging import get_logger
from booking_core.models import Entity, EntityType, entity_to_record
from .base_client import ChangeFeed, RemoteClient, decode_records

logger = get_logger(__name__)


class InMemoryRemoteClient(RemoteClient):
    """Thread-safe in-memory backend with change feeds."""

    name = "memory"

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[EntityType, Dict[str, Dict[str, Any]]] = {t: {} for t in EntityType}
        self._feeds: Dict[EntityType, List[ChangeFeed]] = {t: [] for t in EntityType}
        self.unavailable: Set[EntityType] = set()
        self.rejected_ids: Set[str] = set()
        # (entity type, identifiers) of every sync_up call, accepted or not
        self.sync_up_calls: List[Tuple[EntityType, List[str]]] = []

    def _check_available(self, entity_type: EntityType) -> None:
        if entity_type in self.unavailable:
            raise RemoteUnavailable(f"{entity_type.table} backend unreachable", table=entity_type.table)

    def _notify(self, entity_type: EntityType, event: str) -> None:
        for feed in list(self._feeds[entity_type]):
            feed.push(event)

    # =========================================================================
    # RemoteClient
    # =========================================================================

    def sync_up(self, entity_type: EntityType, entities: Sequence[Entity]) -> int:
        ids = [e.id for e in entities]
        with self._lock:
            self.sync_up_calls.append((entity_type, ids))
            self._check_available(entity_type)
            if not entities:
                return 0

            bad = sorted(self.rejected_ids.intersection(ids))
            if bad:
                raise RemoteRejected(
                    f"{entity_type.table} upsert rejected for {', '.join(bad)}",
                    table=entity_type.table,
                    status="23514",
                )

            changed = False
            table = self._records[entity_type]
            for entity in entities:
                record = entity_to_record(entity)
                if table.get(entity.id) != record:
                    table[entity.id] = record
                    changed = True

            if changed:
                self._notify(entity_type, "UPDATE")
        return len(entities)

    def fetch_all(self, entity_type: EntityType) -> List[Entity]:
        with self._lock:
            self._check_available(entity_type)
            records = list(self._records[entity_type].values())
        return decode_records(entity_type, records)

    def fetch_by_id(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        with self._lock:
            self._check_available(entity_type)
            record = self._records[entity_type].get(entity_id)
        if record is None:
            return None
        entities = decode_records(entity_type, [record])
        return entities[0] if entities else None

    def delete(self, entity_type: EntityType, entity_ids: Sequence[str]) -> int:
        with self._lock:
            self._check_available(entity_type)
            table = self._records[entity_type]
            removed = [i for i in entity_ids if table.pop(i, None) is not None]
            if removed:
                self._notify(entity_type, "DELETE")
        return len(removed)

    def subscribe(self, entity_type: EntityType) -> ChangeFeed:
        with self._lock:
            self._check_available(entity_type)
            feed: Optional[ChangeFeed] = None

            def _detach() -> None:
                with self._lock:
                    if feed in self._feeds[entity_type]:
                        self._feeds[entity_type].remove(feed)

            feed = ChangeFeed(entity_type, on_close=_detach)
            self._feeds[entity_type].append(feed)
        return feed

    def close(self) -> None:
        with self._lock:
            feeds = [f for t in EntityType for f in self._feeds[t]]
        for feed in feeds:
            feed.close()

    # =========================================================================
    # TEST / LOCAL-MODE HELPERS
    # =========================================================================

    def put_remote(self, *entities: Entity, notify: bool = True) -> None:
        """Write records as if another device had pushed them."""
        with self._lock:
            types = set()
            for entity in entities:
                self._records[entity.entity_type][entity.id] = entity_to_record(entity)
                types.add(entity.entity_type)
            if notify:
                for entity_type in types:
                    self._notify(entity_type, "UPDATE")

    def put_raw(self, entity_type: EntityType, record: Dict[str, Any]) -> None:
        """Store a wire record as-is (may be malformed)."""
        with self._lock:
            self._records[entity_type][record["id"]] = dict(record)

    def remote_ids(self, entity_type: EntityType) -> Set[str]:
        with self._lock:
            return set(self._records[entity_type])

    def emit_change(self, entity_type: EntityType, event: str = "UPDATE") -> None:
        with self._lock:
            self._notify(entity_type, event)

    def fail_feeds(self, entity_type: EntityType, message: str = "connection lost") -> None:
        """Kill every open feed of a type, as a dropped socket would."""
        with self._lock:
            feeds = list(self._feeds[entity_type])
            self._feeds[entity_type].clear()
        logger.info(f"Failing {len(feeds)} {entity_type.table} change feed(s): {message}")
        for feed in feeds:
            feed.fail(RemoteUnavailable(message, table=entity_type.table))

    def feed_count(self, entity_type: EntityType) -> int:
        with self._lock:
            return len(self._feeds[entity_type])
