# =============================================================================
# booking_core/offline/change_publisher.py
# Latest-value publisher for merged collections
# =============================================================================
"""
ChangePublisher - Hands merged collections to view-models.

Sync passes publish here; consumers either register a callback (replayed with
the latest value on subscribe) or pull from a stream that always yields the
newest collection, so a slow renderer skips intermediate snapshots instead of
queueing them.
"""

from __future__ import annotations
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from booking_core.logging import get_logger
from booking_core.models import Entity, EntityType

logger = get_logger(__name__)

Listener = Callable[[List[Entity]], None]


class Subscription:
    """Handle returned by subscribe(); cancel() detaches the callback."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._cancel()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.cancel()
        return False


class PublisherStream:
    """
    Blocking iterator over one entity type's published collections.

    Each next() returns the newest collection published since the previous
    call; intermediate values are conflated away.
    """

    def __init__(self, publisher: ChangePublisher, entity_type: EntityType):
        self._publisher = publisher
        self._entity_type = entity_type
        self._seen_version = 0
        self._closed = False

    def __iter__(self) -> PublisherStream:
        return self

    def __next__(self) -> List[Entity]:
        value = self.next(timeout=None)
        if value is None:
            raise StopIteration
        return value

    def next(self, timeout: Optional[float] = None) -> Optional[List[Entity]]:
        """Wait for a newer collection; None on timeout or once closed."""
        condition = self._publisher._condition
        with condition:
            condition.wait_for(
                lambda: self._closed
                or self._publisher._version(self._entity_type) > self._seen_version,
                timeout=timeout,
            )
            if self._closed:
                return None
            version, value = self._publisher._entry(self._entity_type)
            if version <= self._seen_version:
                return None
            self._seen_version = version
            return list(value)

    def close(self) -> None:
        with self._publisher._condition:
            self._closed = True
            self._publisher._condition.notify_all()


class ChangePublisher:
    """
    Multi-subscriber, replay-latest publisher keyed by entity type.

    Usage:
        publisher = ChangePublisher()
        sub = publisher.subscribe(EntityType.PATIENT, render_patients)
        ...
        sub.cancel()
    """

    def __init__(self):
        self._condition = threading.Condition()
        self._latest: Dict[EntityType, Tuple[int, Tuple[Entity, ...]]] = {}
        self._listeners: Dict[EntityType, List[Listener]] = {t: [] for t in EntityType}

    def _version(self, entity_type: EntityType) -> int:
        return self._latest.get(entity_type, (0, ()))[0]

    def _entry(self, entity_type: EntityType) -> Tuple[int, Tuple[Entity, ...]]:
        return self._latest.get(entity_type, (0, ()))

    def latest(self, entity_type: EntityType) -> Optional[List[Entity]]:
        """Most recently published collection, or None before the first publish."""
        with self._condition:
            if entity_type not in self._latest:
                return None
            return list(self._latest[entity_type][1])

    def publish(self, entity_type: EntityType, entities: Sequence[Entity]) -> None:
        """Store the collection as latest and notify every subscriber."""
        snapshot = tuple(entities)
        with self._condition:
            version = self._version(entity_type) + 1
            self._latest[entity_type] = (version, snapshot)
            listeners = list(self._listeners[entity_type])
            self._condition.notify_all()

        for listener in listeners:
            self._invoke(listener, entity_type, snapshot)

    def subscribe(self, entity_type: EntityType, callback: Listener) -> Subscription:
        """
        Register a callback; it is called at once with the latest collection
        (if any) and then after every publish.
        """
        with self._condition:
            self._listeners[entity_type].append(callback)
            entry = self._latest.get(entity_type)

        if entry is not None:
            self._invoke(callback, entity_type, entry[1])

        def _remove() -> None:
            with self._condition:
                if callback in self._listeners[entity_type]:
                    self._listeners[entity_type].remove(callback)

        return Subscription(_remove)

    def stream(self, entity_type: EntityType) -> PublisherStream:
        """Pull-style consumer; replays the latest collection on first next()."""
        return PublisherStream(self, entity_type)

    def subscriber_count(self, entity_type: EntityType) -> int:
        with self._condition:
            return len(self._listeners[entity_type])

    @staticmethod
    def _invoke(listener: Listener, entity_type: EntityType, snapshot: Tuple[Entity, ...]) -> None:
        try:
            listener(list(snapshot))
        except Exception as e:
            logger.error(f"Error in {entity_type.value} subscriber: {e}", exc_info=True)
