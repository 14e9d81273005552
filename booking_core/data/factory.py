# =============================================================================
# booking_core/data/factory.py
# Remote client registry
# =============================================================================

from __future__ import annotations
from typing import Callable, Dict

from booking_core.config import SyncConfig
from booking_core.errors import ConfigurationError
from booking_core.logging import get_logger
from .base_client import RemoteClient
from .memory_client import InMemoryRemoteClient

logger = get_logger(__name__)


def _supabase(config: SyncConfig) -> RemoteClient:
    from .supabase_client import SupabaseRemoteClient

    return SupabaseRemoteClient(
        config.supabase_url,
        config.supabase_key,
        timeout=config.request_timeout,
    )


def _memory(config: SyncConfig) -> RemoteClient:
    return InMemoryRemoteClient()


# Provider name -> builder
REMOTE_CLIENTS: Dict[str, Callable[[SyncConfig], RemoteClient]] = {
    "supabase": _supabase,
    "memory": _memory,
}


def create_remote_client(config: SyncConfig) -> RemoteClient:
    """
    Build the remote client named by ``config.remote_provider``.

    Raises:
        ConfigurationError: unknown provider or missing credentials
    """
    config.validate()
    builder = REMOTE_CLIENTS.get(config.remote_provider)
    if builder is None:
        raise ConfigurationError(
            f"Unknown remote provider: {config.remote_provider}",
            config_key="remote_provider",
            expected_type=" | ".join(REMOTE_CLIENTS),
        )
    logger.info(f"Using '{config.remote_provider}' remote backend")
    return builder(config)
