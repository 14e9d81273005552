# =============================================================================
# booking_core/offline/entity_store.py
# Local SQLite Entity Store with live queries
# =============================================================================
"""
EntityStore - On-device storage for patients and appointments.

Features:
- Automatic schema creation
- Replace-on-conflict upserts keyed by identifier
- Live queries that re-emit the full collection after every committed change
- Delete-log (tombstones) so merges do not resurrect deleted records
- DataFrame integration (pandas)
- Thread-safe operations (thread-local connections, per-type write locks)

One store is constructed per process by the application and passed to the
components that need it.
"""

from __future__ import annotations
import sqlite3
import threading
import json
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from booking_core.errors import LocalStoreError
from booking_core.logging import get_logger
from booking_core.models import (
    AppointmentStatus,
    Entity,
    EntityType,
    entity_from_record,
    entity_to_record,
    next_timestamp,
)
from booking_core.offline.change_publisher import Subscription

logger = get_logger(__name__)

Predicate = Callable[[Entity], bool]
Listener = Callable[[List[Entity]], None]


class LiveQuery:
    """
    A query over one entity type that stays current.

    subscribe() replays the current (filtered) collection immediately and then
    delivers the full collection again after every committed mutation of that
    type. Any number of subscribers may attach.
    """

    def __init__(
        self,
        store: EntityStore,
        entity_type: EntityType,
        predicate: Optional[Predicate] = None,
    ):
        self._store = store
        self.entity_type = entity_type
        self._predicate = predicate

    def _apply(self, entities: Iterable[Entity]) -> List[Entity]:
        if self._predicate is None:
            return list(entities)
        return [e for e in entities if self._predicate(e)]

    def current(self) -> List[Entity]:
        """One-shot read of the query result."""
        return self._apply(self._store.snapshot(self.entity_type))

    def subscribe(self, callback: Listener) -> Subscription:
        return self._store._add_listener(self.entity_type, self._apply, callback)


class EntityStore:
    """
    Local SQLite store for the synchronized entity tables.

    Usage:
        store = EntityStore(Path("local_data/booking.db"))
        store.upsert(patient)
        sub = store.get_all(EntityType.PATIENT).subscribe(render)
    """

    SCHEMA = {
        "patients": """
            CREATE TABLE IF NOT EXISTS patients (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                dateOfBirth TEXT NOT NULL,
                address TEXT,
                medicalHistory TEXT DEFAULT '',
                createdAt INTEGER NOT NULL,
                updatedAt INTEGER NOT NULL
            )
        """,
        "appointments": """
            CREATE TABLE IF NOT EXISTS appointments (
                id TEXT PRIMARY KEY,
                patientId TEXT NOT NULL,
                dateTime TEXT NOT NULL,
                status TEXT NOT NULL,
                notes TEXT DEFAULT '',
                createdAt INTEGER NOT NULL,
                updatedAt INTEGER NOT NULL
            )
        """,
        "index_appointments_patientId": """
            CREATE INDEX IF NOT EXISTS index_appointments_patientId
            ON appointments(patientId)
        """,
        "tombstones": """
            CREATE TABLE IF NOT EXISTS tombstones (
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                deleted_at INTEGER NOT NULL,
                PRIMARY KEY (entity_type, entity_id)
            )
        """,
        "app_settings": """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """,
    }

    COLUMNS = {
        EntityType.PATIENT: [
            "id", "name", "email", "phone", "dateOfBirth",
            "address", "medicalHistory", "createdAt", "updatedAt",
        ],
        EntityType.APPOINTMENT: [
            "id", "patientId", "dateTime", "status", "notes",
            "createdAt", "updatedAt",
        ],
    }

    ORDER_BY = {
        EntityType.PATIENT: "name ASC, id ASC",
        EntityType.APPOINTMENT: "dateTime ASC, id ASC",
    }

    def __init__(self, db_path: Path):
        """
        Open (and create if needed) the store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._write_locks = {t: threading.RLock() for t in EntityType}
        self._listeners: Dict[EntityType, List[Tuple[Callable, Listener]]] = {
            t: [] for t in EntityType
        }
        self._initialized = False
        self.initialize()

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
            except sqlite3.Error as e:
                raise LocalStoreError(f"Cannot open local store at {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _guard(self, table: str, operation: str) -> Iterator[None]:
        """Translate sqlite errors into LocalStoreError."""
        try:
            yield
        except sqlite3.Error as e:
            raise LocalStoreError(str(e), table=table, operation=operation) from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._guard("*", "initialize"):
            conn = self._get_connection()
            conn.execute("PRAGMA journal_mode=WAL")
            for name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified: {name}")
            conn.commit()

        self._initialized = True
        logger.info(f"Local store initialized at: {self.db_path}")

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # =========================================================================
    # READS
    # =========================================================================

    def _rows_to_entities(self, entity_type: EntityType, rows: Sequence[sqlite3.Row]) -> List[Entity]:
        entities = []
        for row in rows:
            try:
                entities.append(entity_from_record(entity_type, dict(row)))
            except ValueError as e:
                raise LocalStoreError(
                    f"Corrupt {entity_type.table} row {row['id']}: {e}",
                    table=entity_type.table,
                    operation="read",
                ) from e
        return entities

    def snapshot(self, entity_type: EntityType) -> List[Entity]:
        """Current contents of a table (one-shot)."""
        table = entity_type.table
        with self._guard(table, "select"):
            rows = self._get_connection().execute(
                f"SELECT * FROM {table} ORDER BY {self.ORDER_BY[entity_type]}"
            ).fetchall()
        return self._rows_to_entities(entity_type, rows)

    def get_all(self, entity_type: EntityType) -> LiveQuery:
        """Live view of every record of a type."""
        return LiveQuery(self, entity_type)

    def search(self, entity_type: EntityType, predicate: Predicate) -> LiveQuery:
        """Live view of the records matching a predicate."""
        return LiveQuery(self, entity_type, predicate)

    def get_by_id(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        table = entity_type.table
        with self._guard(table, "select"):
            row = self._get_connection().execute(
                f"SELECT * FROM {table} WHERE id = ?", [entity_id]
            ).fetchone()
        if row is None:
            return None
        return self._rows_to_entities(entity_type, [row])[0]

    def count(self, entity_type: EntityType) -> int:
        table = entity_type.table
        with self._guard(table, "count"):
            row = self._get_connection().execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
        return row["n"]

    # =========================================================================
    # QUERIES FROM THE SCHEDULING SCREENS
    # =========================================================================

    def search_patients(self, query: str) -> LiveQuery:
        """Patients whose name or phone contains the text (case-insensitive)."""
        needle = query.strip().lower()
        return self.search(
            EntityType.PATIENT,
            lambda p: needle in p.name.lower() or needle in p.phone.lower(),
        )

    def appointments_for_patient(self, patient_id: str) -> LiveQuery:
        return self.search(EntityType.APPOINTMENT, lambda a: a.patient_id == patient_id)

    def appointments_by_status(self, status: AppointmentStatus) -> LiveQuery:
        return self.search(EntityType.APPOINTMENT, lambda a: a.status is status)

    def appointments_between(self, start: datetime, end: datetime) -> LiveQuery:
        """Appointments with start <= date_time <= end (wall-clock)."""
        return self.search(EntityType.APPOINTMENT, lambda a: start <= a.date_time <= end)

    # =========================================================================
    # WRITES
    # =========================================================================

    def _upsert_sql(self, entity_type: EntityType, only_newer: bool = False) -> str:
        table = entity_type.table
        columns = self.COLUMNS[entity_type]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}"
        )
        if only_newer:
            sql += f" WHERE excluded.updatedAt >= {table}.updatedAt"
        return sql

    def upsert(self, entity: Entity) -> None:
        """Insert or fully overwrite one record."""
        self.upsert_batch(entity.entity_type, [entity])

    def upsert_batch(
        self,
        entity_type: EntityType,
        entities: Sequence[Entity],
        only_newer: bool = False,
    ) -> int:
        """
        Insert or fully overwrite records in one transaction.

        Args:
            entity_type: Table to write
            entities: Records of that type
            only_newer: Leave a stored row alone when its ``updatedAt`` is
                later than the incoming record's (sync writes)

        Returns:
            Number of records written
        """
        if not entities:
            return 0

        columns = self.COLUMNS[entity_type]
        rows = []
        for entity in entities:
            if entity.entity_type is not entity_type:
                raise LocalStoreError(
                    f"Cannot write {entity.entity_type.table} record into {entity_type.table}",
                    table=entity_type.table,
                    operation="upsert",
                )
            record = entity_to_record(entity)
            rows.append([record[c] for c in columns])

        table = entity_type.table
        with self._write_locks[entity_type]:
            with self._guard(table, "upsert"):
                with self.transaction() as conn:
                    cursor = conn.executemany(self._upsert_sql(entity_type, only_newer), rows)
                    written = cursor.rowcount if only_newer else len(rows)
            self._notify(entity_type)

        if written < len(rows):
            logger.info(f"Kept {len(rows) - written} newer {table} rows over incoming sync data")
        return written

    def delete(self, entity: Entity) -> bool:
        """
        Delete a record and log a tombstone for it.

        Deleting a patient also deletes (and tombstones) its appointments.

        Returns:
            True if the record existed
        """
        entity_type = entity.entity_type
        affected = [entity_type]
        if entity_type is EntityType.PATIENT:
            affected.append(EntityType.APPOINTMENT)

        # Lock order follows EntityType declaration order
        locks = [self._write_locks[t] for t in EntityType if t in affected]
        for lock in locks:
            lock.acquire()
        try:
            deleted_at = next_timestamp()
            with self._guard(entity_type.table, "delete"):
                with self.transaction() as conn:
                    cursor = conn.execute(
                        f"DELETE FROM {entity_type.table} WHERE id = ?", [entity.id]
                    )
                    existed = cursor.rowcount > 0
                    tombstones = [(entity_type.value, entity.id, deleted_at)]

                    if entity_type is EntityType.PATIENT:
                        child_ids = [
                            row["id"] for row in conn.execute(
                                "SELECT id FROM appointments WHERE patientId = ?", [entity.id]
                            ).fetchall()
                        ]
                        conn.execute("DELETE FROM appointments WHERE patientId = ?", [entity.id])
                        tombstones.extend(
                            (EntityType.APPOINTMENT.value, child_id, deleted_at)
                            for child_id in child_ids
                        )

                    conn.executemany(
                        "INSERT OR REPLACE INTO tombstones (entity_type, entity_id, deleted_at) "
                        "VALUES (?, ?, ?)",
                        tombstones,
                    )

            for t in affected:
                self._notify(t)
        finally:
            for lock in reversed(locks):
                lock.release()

        return existed

    def purge(self, entity_type: EntityType, entity_ids: Iterable[str]) -> int:
        """Remove rows without logging tombstones or cascading."""
        ids = list(entity_ids)
        if not ids:
            return 0

        table = entity_type.table
        with self._write_locks[entity_type]:
            with self._guard(table, "delete"):
                with self.transaction() as conn:
                    cursor = conn.executemany(
                        f"DELETE FROM {table} WHERE id = ?", [(i,) for i in ids]
                    )
                    removed = cursor.rowcount
            self._notify(entity_type)

        return removed

    # =========================================================================
    # TOMBSTONES (DELETE-LOG)
    # =========================================================================

    def get_tombstones(self, entity_type: EntityType) -> Dict[str, int]:
        """Map of deleted identifier -> deletion stamp (epoch ms)."""
        with self._guard("tombstones", "select"):
            rows = self._get_connection().execute(
                "SELECT entity_id, deleted_at FROM tombstones WHERE entity_type = ?",
                [entity_type.value],
            ).fetchall()
        return {row["entity_id"]: row["deleted_at"] for row in rows}

    def clear_tombstones(self, entity_type: EntityType, entity_ids: Iterable[str]) -> int:
        ids = list(entity_ids)
        if not ids:
            return 0
        with self._guard("tombstones", "delete"):
            with self.transaction() as conn:
                cursor = conn.executemany(
                    "DELETE FROM tombstones WHERE entity_type = ? AND entity_id = ?",
                    [(entity_type.value, entity_id) for entity_id in ids],
                )
                return cursor.rowcount

    def purge_tombstones(self, older_than_ms: int) -> int:
        """Drop tombstones recorded before the given stamp."""
        with self._guard("tombstones", "delete"):
            with self.transaction() as conn:
                cursor = conn.execute(
                    "DELETE FROM tombstones WHERE deleted_at < ?", [older_than_ms]
                )
                return cursor.rowcount

    # =========================================================================
    # LIVE QUERY PLUMBING
    # =========================================================================

    def _add_listener(
        self,
        entity_type: EntityType,
        transform: Callable[[List[Entity]], List[Entity]],
        callback: Listener,
    ) -> Subscription:
        entry = (transform, callback)
        with self._write_locks[entity_type]:
            self._listeners[entity_type].append(entry)
            # Replay under the write lock so no mutation slips in between
            self._deliver(entity_type, entry, self.snapshot(entity_type))

        def _remove() -> None:
            with self._write_locks[entity_type]:
                if entry in self._listeners[entity_type]:
                    self._listeners[entity_type].remove(entry)

        return Subscription(_remove)

    def _notify(self, entity_type: EntityType) -> None:
        """Re-emit the table to every listener; caller holds the type's write lock."""
        listeners = list(self._listeners[entity_type])
        if not listeners:
            return
        entities = self.snapshot(entity_type)
        for entry in listeners:
            self._deliver(entity_type, entry, entities)

    @staticmethod
    def _deliver(entity_type: EntityType, entry: Tuple[Callable, Listener], entities: List[Entity]) -> None:
        transform, callback = entry
        try:
            callback(transform(entities))
        except Exception as e:
            logger.error(f"Error in {entity_type.table} live query callback: {e}", exc_info=True)

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    def to_dataframe(self, entity_type: EntityType) -> pd.DataFrame:
        """
        Load a table into a pandas DataFrame (wire column names).

        Args:
            entity_type: Table to export

        Returns:
            DataFrame with one row per record
        """
        table = entity_type.table
        with self._guard(table, "select"):
            return pd.read_sql_query(
                f"SELECT * FROM {table} ORDER BY {self.ORDER_BY[entity_type]}",
                self._get_connection(),
            )

    def from_dataframe(self, entity_type: EntityType, df: pd.DataFrame) -> int:
        """
        Import records from a DataFrame with wire column names.

        Rows that cannot be decoded are logged and skipped.

        Returns:
            Number of records written
        """
        df = df.replace({np.nan: None})

        entities = []
        for record in df.to_dict(orient="records"):
            try:
                entities.append(entity_from_record(entity_type, record))
            except ValueError as e:
                logger.warning(f"Skipping {entity_type.table} row: {e}")

        return self.upsert_batch(entity_type, entities)

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get an app setting."""
        with self._guard("app_settings", "select"):
            row = self._get_connection().execute(
                "SELECT value FROM app_settings WHERE key = ?", [key]
            ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            return row["value"]

    def set_setting(self, key: str, value: Any) -> None:
        """Set an app setting."""
        value_str = json.dumps(value) if not isinstance(value, str) else value
        with self._guard("app_settings", "upsert"):
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO app_settings (key, value, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    [key, value_str, datetime.now().isoformat()],
                )
