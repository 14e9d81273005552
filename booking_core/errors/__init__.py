# =============================================================================
# booking_core/errors/__init__.py
# Centralized Error Handling for the booking sync core
# =============================================================================

from .exceptions import (
    BookingSyncError,
    LocalStoreError,
    RemoteUnavailable,
    RemoteRejected,
    MergeInvariantViolation,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    ErrorContext,
)

__all__ = [
    # Exceptions
    "BookingSyncError",
    "LocalStoreError",
    "RemoteUnavailable",
    "RemoteRejected",
    "MergeInvariantViolation",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "ErrorContext",
]
