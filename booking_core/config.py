# =============================================================================
# booking_core/config.py
# Sync configuration (secrets.toml + .env + environment)
# =============================================================================
"""
Configuration for the sync core.

Resolution order (later wins):
    1. Defaults below
    2. ``.streamlit/secrets.toml``-style file:

        [supabase]
        url = "https://your-project.supabase.co"
        key = "your-anon-key"

        [sync]
        batch_size = 50
        db_path = "local_data/booking.db"

    3. Environment variables (``.env`` is loaded first via python-dotenv):
       SUPABASE_URL, SUPABASE_KEY, BOOKING_DB_PATH, BOOKING_BATCH_SIZE,
       BOOKING_REMOTE_PROVIDER, BOOKING_REQUEST_TIMEOUT
"""

from __future__ import annotations
import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from booking_core.errors import ConfigurationError
from booking_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DB_PATH = Path("local_data") / "booking.db"
DEFAULT_SECRETS_PATH = Path(".streamlit") / "secrets.toml"

REMOTE_PROVIDERS = ("supabase", "memory")

# Environment variable -> config field
ENV_OVERRIDES = {
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_KEY": "supabase_key",
    "BOOKING_DB_PATH": "db_path",
    "BOOKING_BATCH_SIZE": "batch_size",
    "BOOKING_REMOTE_PROVIDER": "remote_provider",
    "BOOKING_REQUEST_TIMEOUT": "request_timeout",
}


@dataclass(frozen=True)
class SyncConfig:
    """Settings for the store, the remote client and the sync engine."""
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    remote_provider: str = "supabase"
    db_path: Path = DEFAULT_DB_PATH
    batch_size: int = 50                    # Records per local/remote write
    request_timeout: float = 30.0           # Seconds, remote connect/request
    max_resubscribe_attempts: int = 5       # Dead change feeds before giving up
    backoff_base: float = 2.0               # Seconds, doubled per attempt
    tombstone_retention_days: int = 30
    check_connectivity: bool = True

    def validate(self) -> SyncConfig:
        """Raise ConfigurationError on unusable values; return self for chaining."""
        if self.remote_provider not in REMOTE_PROVIDERS:
            raise ConfigurationError(
                f"Unknown remote provider: {self.remote_provider}",
                config_key="remote_provider",
                expected_type=" | ".join(REMOTE_PROVIDERS),
            )
        if self.remote_provider == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ConfigurationError(
                "Missing Supabase credentials (set SUPABASE_URL and SUPABASE_KEY "
                "or the [supabase] section of secrets.toml)",
                config_key="supabase_url",
            )
        if self.batch_size < 1:
            raise ConfigurationError(
                "batch_size must be a positive integer",
                config_key="batch_size",
                expected_type="int >= 1",
            )
        if self.request_timeout <= 0:
            raise ConfigurationError(
                "request_timeout must be positive",
                config_key="request_timeout",
                expected_type="float > 0",
            )
        if self.max_resubscribe_attempts < 0 or self.backoff_base < 0:
            raise ConfigurationError(
                "Resubscribe settings must not be negative",
                config_key="max_resubscribe_attempts",
            )
        return self


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw TOML/env value to the type of the named field."""
    target = {f.name: f.type for f in fields(SyncConfig)}.get(name)
    if target is None:
        raise ConfigurationError(f"Unknown setting: {name}", config_key=name)
    try:
        if target == "Path":
            return Path(value)
        if target == "int":
            return int(value)
        if target == "float":
            return float(value)
        if target == "bool":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {name}: {value!r}",
            config_key=name,
            expected_type=target,
        ) from e
    return value


def _load_secrets(path: Path) -> Dict[str, Any]:
    """Read the [supabase] and [sync] tables of a secrets file."""
    if not path.exists():
        return {}

    try:
        with open(path, "rb") as f:
            secrets = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Malformed secrets file {path}: {e}", config_key=str(path)) from e

    values: Dict[str, Any] = {}
    supabase = secrets.get("supabase", {})
    if supabase.get("url"):
        values["supabase_url"] = supabase["url"]
    if supabase.get("key"):
        values["supabase_key"] = supabase["key"]

    known = {f.name for f in fields(SyncConfig)}
    for key, value in secrets.get("sync", {}).items():
        if key in known:
            values[key] = value
        else:
            logger.warning(f"Ignoring unknown [sync] setting: {key}")
    return values


def load_config(
    secrets_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> SyncConfig:
    """
    Build and validate a SyncConfig.

    Args:
        secrets_path: TOML secrets file (default: .streamlit/secrets.toml)
        environ: Environment mapping (default: os.environ after load_dotenv())
        **overrides: Explicit field values, applied last

    Returns:
        Validated SyncConfig
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    values = _load_secrets(Path(secrets_path) if secrets_path else DEFAULT_SECRETS_PATH)

    for env_name, field_name in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[field_name] = environ[env_name]

    values.update(overrides)
    config = replace(SyncConfig(), **{k: _coerce(k, v) for k, v in values.items()})
    return config.validate()
