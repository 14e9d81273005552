# =============================================================================
# booking_core/offline/__init__.py
# Offline-First Sync Core for the scheduling app
# =============================================================================
"""
Offline-First Sync Module

The device keeps a complete local copy of patients and appointments and keeps
working without a network; a sync engine reconciles that copy with the remote
backend whenever it can.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                      OFFLINE-FIRST SYNC CORE                     │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                    ChangePublisher                        │  │
│   │          (Merged collections -> view-models)              │  │
│   └──────────────────────────────────────────────────────────┘  │
│                            ▲                                     │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                      SyncEngine                           │  │
│   │   fetch ─► merge ─► persist local ─► push remote          │  │
│   └──────────────────────────────────────────────────────────┘  │
│              │                           │                       │
│              ▼                           ▼                       │
│   ┌──────────────────┐        ┌──────────────────┐              │
│   │   EntityStore    │        │   RemoteClient   │              │
│   │ (SQLite, Local)  │        │ (Supabase/Cloud) │              │
│   └──────────────────┘        └──────────────────┘              │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from booking_core.offline import create_sync_engine
from booking_core.models import EntityType

engine = create_sync_engine()
results = engine.sync_all()
if not results[EntityType.APPOINTMENT]:
    print(results[EntityType.APPOINTMENT].error)

for appointments in engine.subscribe_continuous(EntityType.APPOINTMENT):
    render(appointments)
"""

from booking_core.offline.change_publisher import (
    ChangePublisher,
    PublisherStream,
    Subscription,
)

from booking_core.offline.entity_store import (
    EntityStore,
    LiveQuery,
)

from booking_core.offline.merge import (
    MergeResult,
    merge,
    reconcile,
    resolve_conflict,
)

from booking_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
)

from booking_core.offline.sync_engine import (
    ContinuousSync,
    SyncEngine,
    SyncPhase,
    SyncReport,
    SyncState,
    create_sync_engine,
)

__all__ = [
    # Publisher
    "ChangePublisher",
    "PublisherStream",
    "Subscription",
    # Local store
    "EntityStore",
    "LiveQuery",
    # Merge
    "MergeResult",
    "merge",
    "reconcile",
    "resolve_conflict",
    # Connectivity
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    # Orchestration
    "ContinuousSync",
    "SyncEngine",
    "SyncPhase",
    "SyncReport",
    "SyncState",
    "create_sync_engine",
]
