# =============================================================================
# booking_core/data/__init__.py
# Remote backends for the booking sync core
# =============================================================================

from booking_core.data.base_client import (
    ChangeFeed,
    ChangeNotification,
    RemoteClient,
    decode_records,
)
from booking_core.data.memory_client import InMemoryRemoteClient
from booking_core.data.factory import REMOTE_CLIENTS, create_remote_client

__all__ = [
    "ChangeFeed",
    "ChangeNotification",
    "RemoteClient",
    "decode_records",
    "InMemoryRemoteClient",
    "REMOTE_CLIENTS",
    "create_remote_client",
]
