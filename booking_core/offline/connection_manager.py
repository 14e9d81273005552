# =============================================================================
# booking_core/offline/connection_manager.py
# Backend Reachability Detection
# =============================================================================
"""
ConnectionManager - Detects and monitors whether the Supabase backend is reachable.

Features:
- TCP reachability probe of the configured Supabase host
- Optional background monitoring thread
- Event callbacks for status changes

The sync engine consults it before a pass so an unreachable backend fails
fast with RemoteUnavailable instead of waiting out the request timeout.
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import urlparse

from booking_core.logging import get_logger

logger = get_logger(__name__)

Probe = Callable[[], bool]


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # Backend reachable
    OFFLINE = "offline"         # Backend unreachable
    CHECKING = "checking"       # Currently checking status
    UNKNOWN = "unknown"         # Initial state


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


def tcp_probe(url: Optional[str], timeout: float = 5.0) -> Probe:
    """
    Build a probe that opens (and closes) a TCP connection to the URL's host.

    Without a URL there is no backend to reach and the probe always succeeds
    (local-only mode).
    """
    if not url:
        return lambda: True

    parsed = urlparse(url)
    host = parsed.hostname
    port = parsed.port or (80 if parsed.scheme == "http" else 443)

    def _probe() -> bool:
        if not host:
            return False
        with socket.create_connection((host, port), timeout=timeout):
            return True

    return _probe


class ConnectionManager:
    """
    Tracks backend reachability.

    Usage:
        manager = ConnectionManager(config.supabase_url)
        if manager.check_connection().status is ConnectionStatus.ONLINE:
            engine.sync_all()
    """

    # Configuration
    CHECK_INTERVAL_ONLINE = 30      # Seconds between checks when online
    CHECK_INTERVAL_OFFLINE = 10     # Seconds between checks when offline
    CONNECTION_TIMEOUT = 5          # Timeout for connection tests

    def __init__(self, supabase_url: Optional[str] = None, probe: Optional[Probe] = None):
        """
        Args:
            supabase_url: Backend URL to probe
            probe: Custom reachability check (overrides the TCP probe)
        """
        self._probe = probe or tcp_probe(supabase_url, self.CONNECTION_TIMEOUT)
        self._state = ConnectionState()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    def check_connection(self) -> ConnectionState:
        """
        Perform a connection check and update state.

        Returns:
            Updated ConnectionState
        """
        with self._lock:
            old_status = self._state.status
            self._state.status = ConnectionStatus.CHECKING
            self._state.last_check = datetime.now()

            try:
                reachable = bool(self._probe())
                error = None if reachable else "Backend unreachable"
            except OSError as e:
                reachable = False
                error = str(e)
                logger.debug(f"Backend probe failed: {e}")

            if reachable:
                self._state.status = ConnectionStatus.ONLINE
                self._state.last_online = datetime.now()
                self._state.consecutive_failures = 0
                self._state.error_message = None
            else:
                self._state.status = ConnectionStatus.OFFLINE
                self._state.consecutive_failures += 1
                self._state.error_message = error

            changed = old_status != self._state.status

        if changed:
            logger.info(f"Connection status changed: {old_status.value} -> {self._state.status.value}")
            self._notify_callbacks()

        return self._state

    def start_monitoring(self) -> None:
        """Start background connection monitoring."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="ConnectionMonitor"
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        """Stop background connection monitoring."""
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
        logger.debug("Connection monitoring stopped")

    def _monitoring_loop(self) -> None:
        while not self._stop_monitoring.is_set():
            interval = (
                self.CHECK_INTERVAL_ONLINE
                if self.is_online
                else self.CHECK_INTERVAL_OFFLINE
            )

            # Wait for interval or stop signal
            if self._stop_monitoring.wait(timeout=interval):
                break

            try:
                self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """
        Register a callback for connection status changes.

        Args:
            callback: Function called with ConnectionState when status changes
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def force_offline(self) -> None:
        """Force offline mode (for testing or user preference)."""
        with self._lock:
            self._state.status = ConnectionStatus.OFFLINE
        self._notify_callbacks()
        logger.info("Forced offline mode")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
