# =============================================================================
# booking_core/data/supabase_client.py
# Supabase Remote Client for the booking sync core
# Handles PostgREST reads/writes and Realtime change feeds
# =============================================================================

from __future__ import annotations
import asyncio
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import httpx
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, acreate_client, create_client

from booking_core.errors import RemoteRejected, RemoteUnavailable
from booking_core.logging import get_logger
from booking_core.models import (
    Entity,
    EntityType,
    entity_to_record,
)
from .base_client import ChangeFeed, RemoteClient, decode_records

logger = get_logger(__name__)

# PostgREST caps a response at 1000 rows
PAGE_SIZE = 1000


class RealtimeListener(threading.Thread):
    """
    Daemon thread that forwards Realtime ``postgres_changes`` events for one
    table into a ChangeFeed.

    supabase-py only offers Realtime on the async client, so the listener runs
    its own event loop.
    """

    def __init__(self, url: str, key: str, entity_type: EntityType, feed: ChangeFeed):
        super().__init__(name=f"realtime-{entity_type.table}", daemon=True)
        self.url = url
        self.key = key
        self.entity_type = entity_type
        self.feed = feed
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False

    def run(self) -> None:
        table = self.entity_type.table
        try:
            asyncio.run(self._listen())
        except Exception as e:
            logger.warning(f"Realtime listener for {table} died: {e}")
            self.feed.fail(RemoteUnavailable(f"Change feed for {table} lost: {e}", table=table))
            return

        if not self._stop_requested:
            self.feed.fail(RemoteUnavailable(f"Change feed for {table} ended", table=table))

    async def _listen(self) -> None:
        table = self.entity_type.table
        self._stop_event = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        if self._stop_requested:
            return

        client = await acreate_client(self.url, self.key)
        channel = client.channel(f"public:{table}")
        channel.on_postgres_changes(
            "*",
            schema="public",
            table=table,
            callback=self._on_change,
        )
        await channel.subscribe()
        logger.info(f"Subscribed to Realtime changes on {table}")

        try:
            await self._stop_event.wait()
        finally:
            await client.remove_channel(channel)
            logger.info(f"Unsubscribed from Realtime changes on {table}")

    def _on_change(self, payload: Any) -> None:
        event = "UPDATE"
        if isinstance(payload, dict):
            data = payload.get("data") or {}
            event = str(data.get("type") or payload.get("eventType") or event)
        self.feed.push(event)

    def stop(self) -> None:
        self._stop_requested = True
        loop = self._loop
        if loop is None or self._stop_event is None:
            return
        try:
            loop.call_soon_threadsafe(self._stop_event.set)
        except RuntimeError:
            # Loop already finished
            return


class SupabaseRemoteClient(RemoteClient):
    """
    Remote client backed by a Supabase project.

    Usage:
        remote = SupabaseRemoteClient(url, key)
        remote.sync_up(EntityType.PATIENT, patients)
        for notification in remote.subscribe(EntityType.PATIENT):
            ...
    """

    name = "supabase"

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = 30.0,
        client: Optional[Client] = None,
    ):
        """
        Args:
            url: Supabase project URL
            key: Supabase anon/service key
            timeout: Request timeout in seconds
            client: Pre-built supabase client (tests pass a mock)
        """
        self.url = url
        self.key = key
        self.timeout = timeout
        self.client = client or create_client(
            url,
            key,
            options=ClientOptions(postgrest_client_timeout=timeout),
        )
        self._listeners: List[RealtimeListener] = []
        self._lock = threading.Lock()

    @contextmanager
    def _remote_call(self, table: str, operation: str) -> Iterator[None]:
        """Translate transport and API failures into sync errors."""
        try:
            yield
        except APIError as e:
            raise RemoteRejected(
                f"{operation} on {table} rejected: {e.message}",
                table=table,
                status=e.code,
            ) from e
        except (httpx.HTTPError, OSError) as e:
            raise RemoteUnavailable(f"{operation} on {table} failed: {e}", table=table) from e

    # =========================================================================
    # READS
    # =========================================================================

    def fetch_all(self, entity_type: EntityType) -> List[Entity]:
        """
        Fetch ALL records of a type (handles the 1000 row limit).

        Pages are ordered by identifier so concurrent inserts cannot shift
        rows between pages.
        """
        table = entity_type.table
        rows: List[Dict[str, Any]] = []
        offset = 0

        with self._remote_call(table, "select"):
            while True:
                response = (
                    self.client.table(table)
                    .select("*")
                    .order("id")
                    .range(offset, offset + PAGE_SIZE - 1)
                    .execute()
                )

                if not response.data:
                    break
                rows.extend(response.data)
                if len(response.data) < PAGE_SIZE:
                    break
                offset += PAGE_SIZE

        logger.debug(f"Fetched {len(rows)} rows from {table}")
        return decode_records(entity_type, rows)

    def fetch_by_id(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        table = entity_type.table
        with self._remote_call(table, "select"):
            response = (
                self.client.table(table)
                .select("*")
                .eq("id", entity_id)
                .limit(1)
                .execute()
            )

        entities = decode_records(entity_type, response.data or [])
        return entities[0] if entities else None

    # =========================================================================
    # WRITES
    # =========================================================================

    def sync_up(self, entity_type: EntityType, entities: Sequence[Entity]) -> int:
        if not entities:
            return 0

        table = entity_type.table
        records = [entity_to_record(e) for e in entities]
        with self._remote_call(table, "upsert"):
            self.client.table(table).upsert(records, on_conflict="id").execute()

        logger.debug(f"Upserted {len(records)} records to {table}")
        return len(records)

    def delete(self, entity_type: EntityType, entity_ids: Sequence[str]) -> int:
        ids = list(entity_ids)
        if not ids:
            return 0

        table = entity_type.table
        with self._remote_call(table, "delete"):
            self.client.table(table).delete().in_("id", ids).execute()

        logger.debug(f"Deleted {len(ids)} records from {table}")
        return len(ids)

    # =========================================================================
    # CHANGE FEEDS
    # =========================================================================

    def subscribe(self, entity_type: EntityType) -> ChangeFeed:
        listener: Optional[RealtimeListener] = None

        def _stop() -> None:
            if listener is not None:
                listener.stop()
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        feed = ChangeFeed(entity_type, on_close=_stop)
        listener = RealtimeListener(self.url, self.key, entity_type, feed)
        with self._lock:
            self._listeners.append(listener)
        listener.start()
        return feed

    def close(self) -> None:
        """End every open change feed."""
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener.feed.close()
