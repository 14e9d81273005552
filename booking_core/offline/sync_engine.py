# =============================================================================
# booking_core/offline/sync_engine.py
# Synchronization Orchestrator
# =============================================================================
"""
SyncEngine - Reconciles the local store with the remote backend.

Features:
- Per-type pipeline: fetch (local and remote concurrently), merge, persist
  locally, push to remote
- Local persistence always completes before the remote push
- Per-type mutex so two passes for the same type never interleave
- Both types synchronized in parallel with failure isolation
- Continuous sync driven by remote change notifications, with resubscribe
  and exponential backoff
- Sync status tracking and event callbacks
"""

from __future__ import annotations
import hashlib
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from booking_core.config import SyncConfig, load_config
from booking_core.data import RemoteClient, create_remote_client
from booking_core.errors import (
    BookingSyncError,
    ErrorContext,
    LocalStoreError,
    MergeInvariantViolation,
    RemoteRejected,
    RemoteUnavailable,
    handle_error,
)
from booking_core.logging import LogContext, get_logger
from booking_core.models import Entity, EntityType, canonical_form
from booking_core.offline.change_publisher import ChangePublisher
from booking_core.offline.connection_manager import ConnectionManager, ConnectionStatus
from booking_core.offline.entity_store import EntityStore
from booking_core.offline.merge import MergeResult, reconcile
from booking_core.services.base_service import ServiceResult

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class SyncPhase(Enum):
    """Pipeline stage of one entity type."""
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    PERSISTING_LOCAL = "persisting_local"
    PERSISTING_REMOTE = "persisting_remote"
    FAILED = "failed"


@dataclass
class SyncState:
    """Current sync state of one entity type."""
    entity_type: EntityType
    phase: SyncPhase = SyncPhase.IDLE
    last_sync: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    total_synced: int = 0
    failed_count: int = 0

    @property
    def is_syncing(self) -> bool:
        return self.phase not in (SyncPhase.IDLE, SyncPhase.FAILED)


@dataclass
class SyncReport:
    """Outcome of one pipeline pass."""
    entity_type: EntityType
    entities: List[Entity] = field(default_factory=list)
    merge: Dict[str, int] = field(default_factory=dict)
    local_written: int = 0
    remote_pushed: int = 0
    remote_deleted: int = 0
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.entity_type.table,
            "merged": len(self.entities),
            "merge": dict(self.merge),
            "local_written": self.local_written,
            "remote_pushed": self.remote_pushed,
            "remote_deleted": self.remote_deleted,
            "duration": round(self.duration, 3),
        }


def chunked(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    """Split a sequence into consecutive slices of at most ``size`` items."""
    return [items[i:i + size] for i in range(0, len(items), size)]


def record_digest(entity: Entity) -> str:
    """Content fingerprint of one record version."""
    return hashlib.sha256(canonical_form(entity).encode("utf-8")).hexdigest()


class ContinuousSync:
    """
    Live sequence of merged collections for one entity type.

    Each remote change notification triggers fetch + merge + local persist and
    yields the merged collection. Transient remote and merge errors are logged
    and the loop waits for the next notification; a LocalStoreError ends the
    sequence by raising. A dead change feed is reopened with exponential
    backoff; after ``max_resubscribe_attempts`` consecutive failures the
    sequence raises RemoteUnavailable.

    Usage:
        live = engine.subscribe_continuous(EntityType.APPOINTMENT)
        for appointments in live:
            render(appointments)
        ...
        live.cancel()   # from another thread
    """

    def __init__(self, engine: SyncEngine, entity_type: EntityType):
        self._engine = engine
        self.entity_type = entity_type
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._feed = None
        self._failures = 0
        self._finished = False
        self.cycles = 0

        # Open the feed now so changes made right after subscribing are seen
        self._open_feed()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop after the cycle in progress; a blocked reader is woken."""
        self._cancelled.set()
        with self._lock:
            feed = self._feed
        if feed is not None:
            feed.close()

    def __iter__(self) -> ContinuousSync:
        return self

    def __next__(self) -> List[Entity]:
        table = self.entity_type.table
        while True:
            if self._finished or self._cancelled.is_set():
                self._finish()
                raise StopIteration

            feed = self._ensure_feed()
            if feed is None:
                self._finish()
                raise StopIteration

            try:
                next(feed)
            except StopIteration:
                if self._cancelled.is_set():
                    continue
                logger.warning(f"Change feed for {table} closed by the backend")
                self._drop_feed()
                continue
            except RemoteUnavailable as e:
                logger.warning(f"Change feed for {table} lost: {e.message}")
                self._drop_feed()
                continue

            if self._cancelled.is_set():
                continue

            # A notification proves the feed is healthy
            self._failures = 0

            try:
                report = self._engine.refresh(self.entity_type)
            except LocalStoreError:
                self._finish()
                raise
            except (RemoteUnavailable, RemoteRejected, MergeInvariantViolation) as e:
                logger.warning(f"Skipping {table} refresh: [{e.code}] {e.message}")
                continue

            self.cycles += 1
            return report.entities

    def _open_feed(self) -> None:
        try:
            feed = self._engine.remote.subscribe(self.entity_type)
        except RemoteUnavailable as e:
            self._failures += 1
            logger.warning(f"Cannot subscribe to {self.entity_type.table} changes: {e.message}")
            return

        with self._lock:
            self._feed = feed
        if self._cancelled.is_set():
            feed.close()

    def _ensure_feed(self):
        """Current feed, reopening it with backoff; None once cancelled."""
        config = self._engine.config
        while True:
            with self._lock:
                feed = self._feed
            if feed is not None:
                return feed

            if self._failures > config.max_resubscribe_attempts:
                self._finish()
                raise RemoteUnavailable(
                    f"Gave up on {self.entity_type.table} change feed after "
                    f"{config.max_resubscribe_attempts} resubscribe attempts",
                    table=self.entity_type.table,
                )

            if self._failures:
                delay = config.backoff_base * 2 ** (self._failures - 1)
                logger.info(f"Resubscribing to {self.entity_type.table} in {delay:.1f}s")
                if self._cancelled.wait(delay):
                    return None

            self._open_feed()

    def _drop_feed(self) -> None:
        with self._lock:
            feed, self._feed = self._feed, None
        if feed is not None:
            feed.close()
        self._failures += 1

    def _finish(self) -> None:
        self._finished = True
        with self._lock:
            feed, self._feed = self._feed, None
        if feed is not None:
            feed.close()


class SyncEngine:
    """
    Synchronization engine between the local EntityStore and a RemoteClient.

    Usage:
        engine = create_sync_engine()
        results = engine.sync_all()         # {EntityType: ServiceResult}
        engine.start()                      # continuous sync in the background
        ...
        engine.stop()
    """

    def __init__(
        self,
        store: EntityStore,
        remote: RemoteClient,
        publisher: Optional[ChangePublisher] = None,
        config: Optional[SyncConfig] = None,
        connection_manager: Optional[ConnectionManager] = None,
    ):
        self.store = store
        self.remote = remote
        self.publisher = publisher or ChangePublisher()
        self.config = config or SyncConfig(remote_provider=remote.name)
        self.connection_manager = connection_manager

        self._locks = {t: threading.Lock() for t in EntityType}
        self._states = {t: SyncState(entity_type=t) for t in EntityType}
        self._rejected: Dict[EntityType, Set[str]] = {t: set() for t in EntityType}
        self._callbacks: List[Callable[[SyncState], None]] = []
        self._live: List[Tuple[ContinuousSync, threading.Thread]] = []

    # =========================================================================
    # STATE
    # =========================================================================

    def state(self, entity_type: EntityType) -> SyncState:
        return self._states[entity_type]

    @property
    def is_syncing(self) -> bool:
        return any(s.is_syncing for s in self._states.values())

    def _set_phase(self, entity_type: EntityType, phase: SyncPhase) -> None:
        self._states[entity_type].phase = phase
        self._notify_callbacks(self._states[entity_type])

    def register_callback(self, callback: Callable[[SyncState], None]) -> None:
        """Register a callback for sync state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self, state: SyncState) -> None:
        for callback in list(self._callbacks):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        """Get sync status for UI display."""
        display = {}
        for entity_type, state in self._states.items():
            display[entity_type.table] = {
                "phase": state.phase.value,
                "is_syncing": state.is_syncing,
                "last_sync": state.last_sync.isoformat() if state.last_sync else None,
                "last_success": state.last_success.isoformat() if state.last_success else None,
                "last_error": state.last_error,
                "total_synced": state.total_synced,
                "failed_count": state.failed_count,
                "live": any(
                    live.entity_type is entity_type and thread.is_alive()
                    for live, thread in self._live
                ),
            }
        return display

    # =========================================================================
    # PIPELINE
    # =========================================================================

    def sync_one(self, entity_type: EntityType, retry_rejected: bool = False) -> SyncReport:
        """
        Full pass for one entity type: fetch, merge, persist locally, push.

        Blocks while another pass for the same type is running. Records the
        backend rejected on an earlier pass are only sent again with
        ``retry_rejected``.

        Raises:
            RemoteUnavailable, RemoteRejected, LocalStoreError,
            MergeInvariantViolation: after the state has moved to FAILED
        """
        return self._run_pass(entity_type, push=True, retry_rejected=retry_rejected)

    def refresh(self, entity_type: EntityType) -> SyncReport:
        """Fetch, merge and persist locally without pushing to the remote."""
        return self._run_pass(entity_type, push=False)

    def _run_pass(self, entity_type: EntityType, push: bool, retry_rejected: bool = False) -> SyncReport:
        table = entity_type.table
        state = self._states[entity_type]
        operation = f"Syncing {table}" if push else f"Refreshing {table}"

        with self._locks[entity_type]:
            state.last_sync = datetime.now()
            try:
                with LogContext(logger, operation) as ctx:
                    report = self._pipeline(entity_type, push, retry_rejected)
                    report.duration = ctx.elapsed
            except Exception as e:
                state.last_error = str(e)
                state.failed_count += 1
                self._set_phase(entity_type, SyncPhase.FAILED)
                self._set_phase(entity_type, SyncPhase.IDLE)
                raise

            state.last_success = datetime.now()
            state.last_error = None
            state.total_synced += report.local_written
            self._set_phase(entity_type, SyncPhase.IDLE)

        return report

    def _pipeline(self, entity_type: EntityType, push: bool, retry_rejected: bool = False) -> SyncReport:
        table = entity_type.table
        report = SyncReport(entity_type=entity_type)

        if push:
            self._check_connectivity(entity_type)

        self._set_phase(entity_type, SyncPhase.FETCHING)
        local, remote = self._fetch(entity_type)

        self._set_phase(entity_type, SyncPhase.MERGING)
        tombstones = self.store.get_tombstones(entity_type)
        result = reconcile(local, remote, tombstones)
        report.merge = result.summary()
        logger.debug(f"Merged {table}: {report.merge}")

        self._set_phase(entity_type, SyncPhase.PERSISTING_LOCAL)
        report.local_written, kept = self._persist_local(entity_type, local, result)
        # Rows edited during the pass won over the merge result
        report.entities = self.store.snapshot(entity_type) if kept else result.entities
        self.publisher.publish(entity_type, report.entities)

        if push:
            self._set_phase(entity_type, SyncPhase.PERSISTING_REMOTE)
            report.remote_deleted = self._push_deletes(entity_type, remote, result)
            report.remote_pushed = self._push_remote(
                entity_type, remote, report.entities, retry_rejected
            )
            self.store.set_setting(f"last_sync.{table}", datetime.now().isoformat())

        return report

    def _check_connectivity(self, entity_type: EntityType) -> None:
        if self.connection_manager is None or not self.config.check_connectivity:
            return
        if self.connection_manager.check_connection().status is not ConnectionStatus.ONLINE:
            raise RemoteUnavailable(
                f"Backend unreachable, skipping {entity_type.table} sync",
                table=entity_type.table,
            )

    def _fetch(self, entity_type: EntityType) -> Tuple[List[Entity], List[Entity]]:
        """Read the local snapshot while the remote fetch runs on a worker thread."""
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"fetch-{entity_type.table}") as pool:
            remote_future = pool.submit(self.remote.fetch_all, entity_type)
            local = self.store.snapshot(entity_type)
            remote = remote_future.result()
        return local, remote

    def _persist_local(
        self, entity_type: EntityType, local: List[Entity], result: MergeResult
    ) -> Tuple[int, int]:
        """
        Write the merged collection in sequential chunks.

        A row edited locally after the snapshot was taken keeps its newer version.

        Returns:
            (rows written, rows kept over the merge result)
        """
        local_by_id = {e.id: e for e in local}
        changed = [e for e in result.entities if local_by_id.get(e.id) != e]
        changed.sort(key=lambda e: e.id)

        written = 0
        for chunk in chunked(changed, self.config.batch_size):
            written += self.store.upsert_batch(entity_type, chunk, only_newer=True)
        kept = len(changed) - written

        # Tombstoned rows that reached the table again
        stale = [i for i in result.suppressed if i in local_by_id]
        if stale:
            self.store.purge(entity_type, stale)

        if result.revived:
            self.store.clear_tombstones(entity_type, result.revived)
            logger.info(f"Revived {len(result.revived)} {entity_type.table} edited after deletion")

        return written, kept

    def _push_remote(
        self,
        entity_type: EntityType,
        remote: List[Entity],
        merged: List[Entity],
        retry_rejected: bool = False,
    ) -> int:
        """
        Push records the remote lacks or holds in an older version, in
        sequential chunks.

        A record version the backend rejected before is not sent again unless
        ``retry_rejected`` is set. When a chunk is rejected its records are
        re-sent one by one so the acceptable ones still get through.

        Returns:
            Number of records pushed

        Raises:
            RemoteRejected: if any record was rejected, now or previously
        """
        table = entity_type.table
        remembered = self._rejected[entity_type]
        if retry_rejected and remembered:
            logger.info(f"Retrying {len(remembered)} previously rejected {table} record(s)")
            remembered.clear()

        remote_by_id = {e.id: e for e in remote}
        outgoing = [e for e in merged if remote_by_id.get(e.id) != e]
        outgoing.sort(key=lambda e: e.id)

        pending = [e for e in outgoing if record_digest(e) not in remembered]
        skipped = len(outgoing) - len(pending)
        if skipped:
            logger.info(f"Skipped {skipped} previously rejected {table} record(s)")

        pushed = 0
        rejected: List[RemoteRejected] = []
        for chunk in chunked(pending, self.config.batch_size):
            try:
                pushed += self.remote.sync_up(entity_type, chunk)
            except RemoteRejected as e:
                if len(chunk) == 1:
                    remembered.add(record_digest(chunk[0]))
                    rejected.append(e)
                    logger.warning(f"Backend rejected {table} {chunk[0].id}: {e.message}")
                    continue
                logger.warning(
                    f"Backend rejected a chunk of {len(chunk)} {table} records, "
                    f"sending them one by one: {e.message}"
                )
                pushed += self._push_each(entity_type, chunk, rejected)

        if rejected or skipped:
            first = rejected[0] if rejected else None
            raise RemoteRejected(
                f"{len(rejected) + skipped} {table} record(s) rejected by the backend",
                table=table,
                status=first.details.get("status") if first else None,
                details={"pushed": pushed, "rejected": len(rejected), "skipped": skipped},
            )

        return pushed

    def _push_each(
        self,
        entity_type: EntityType,
        chunk: Sequence[Entity],
        rejected: List[RemoteRejected],
    ) -> int:
        pushed = 0
        for entity in chunk:
            try:
                pushed += self.remote.sync_up(entity_type, [entity])
            except RemoteRejected as e:
                self._rejected[entity_type].add(record_digest(entity))
                rejected.append(e)
                logger.warning(f"Backend rejected {entity_type.table} {entity.id}: {e.message}")
        return pushed

    def _push_deletes(self, entity_type: EntityType, remote: List[Entity], result: MergeResult) -> int:
        """Delete remotely the records a local tombstone suppressed."""
        remote_ids = {e.id for e in remote}
        doomed = sorted(i for i in result.suppressed if i in remote_ids)
        deleted = 0
        for chunk in chunked(doomed, self.config.batch_size):
            deleted += self.remote.delete(entity_type, chunk)
        if deleted:
            logger.info(f"Deleted {deleted} {entity_type.table} records remotely")
        return deleted

    # =========================================================================
    # FULL SYNC
    # =========================================================================

    def sync_all(self, retry_rejected: bool = False) -> Dict[EntityType, ServiceResult]:
        """
        Synchronize every entity type in parallel and wait for all of them.

        A failure in one type never affects the others.

        Args:
            retry_rejected: Send records the backend rejected before again

        Returns:
            ServiceResult per entity type (data is the SyncReport)
        """
        with LogContext(logger, "Full sync"):
            self._purge_tombstones()
            with ThreadPoolExecutor(max_workers=len(EntityType), thread_name_prefix="sync") as pool:
                futures = {t: pool.submit(self._sync_result, t, retry_rejected) for t in EntityType}
            results = {t: f.result() for t, f in futures.items()}

        ok = [t.table for t, r in results.items() if r]
        failed = [t.table for t, r in results.items() if not r]
        logger.info(f"Full sync finished: ok={ok} failed={failed}")
        return results

    def _sync_result(self, entity_type: EntityType, retry_rejected: bool = False) -> ServiceResult:
        try:
            report = self.sync_one(entity_type, retry_rejected)
            return ServiceResult.ok(report, metadata=report.to_dict())
        except BookingSyncError as e:
            handle_error(e)
            return ServiceResult.from_exception(e)
        except Exception as e:
            logger.error(f"Unexpected error syncing {entity_type.table}: {e}", exc_info=True)
            return ServiceResult.from_exception(e)

    def _purge_tombstones(self) -> None:
        cutoff = int(time.time() * 1000) - self.config.tombstone_retention_days * DAY_MS
        with ErrorContext("Purging expired tombstones", recoverable=True):
            purged = self.store.purge_tombstones(cutoff)
            if purged:
                logger.info(f"Purged {purged} expired tombstones")

    # =========================================================================
    # CONTINUOUS SYNC
    # =========================================================================

    def subscribe_continuous(self, entity_type: EntityType) -> ContinuousSync:
        """Live sequence of merged collections, refreshed on every remote change."""
        return ContinuousSync(self, entity_type)

    def start(self) -> None:
        """Start background continuous sync for every entity type."""
        if any(thread.is_alive() for _, thread in self._live):
            return

        self._live = []
        for entity_type in EntityType:
            live = self.subscribe_continuous(entity_type)
            thread = threading.Thread(
                target=self._drain,
                args=(live,),
                daemon=True,
                name=f"ContinuousSync-{entity_type.table}",
            )
            self._live.append((live, thread))
            thread.start()
        logger.info("Continuous sync started")

    @staticmethod
    def _drain(live: ContinuousSync) -> None:
        # Results reach consumers through the publisher
        with ErrorContext(f"Continuous {live.entity_type.table} sync", recoverable=True):
            for _ in live:
                pass

    def stop(self) -> None:
        """Stop background continuous sync."""
        for live, _ in self._live:
            live.cancel()
        for _, thread in self._live:
            thread.join(timeout=10)
        self._live = []
        logger.info("Continuous sync stopped")

    def close(self) -> None:
        """Stop background work and release the remote and the store."""
        self.stop()
        self.remote.close()
        self.store.close()


def create_sync_engine(config: Optional[SyncConfig] = None) -> SyncEngine:
    """
    Wire a SyncEngine from configuration.

    Args:
        config: Settings (default: load_config())

    Returns:
        SyncEngine with its own store, remote client and publisher
    """
    config = config or load_config()
    store = EntityStore(config.db_path)
    remote = create_remote_client(config)

    connection_manager = None
    if config.check_connectivity and config.remote_provider == "supabase":
        connection_manager = ConnectionManager(config.supabase_url)

    return SyncEngine(store, remote, ChangePublisher(), config, connection_manager)
