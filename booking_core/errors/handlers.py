# =============================================================================
# booking_core/errors/handlers.py
# Error Handling Utilities for the booking sync core
# =============================================================================

from __future__ import annotations
import traceback
from typing import Any, Dict, Optional

from booking_core.logging import get_logger
from .exceptions import BookingSyncError

logger = get_logger(__name__)


def handle_error(
    error: Exception,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Centralized error handling function.

    Logs the error and returns a dictionary the presentation layer can render
    (message, code and whether a retry affordance makes sense).

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        user_message: Custom message (uses error message if None)

    Returns:
        Error description dictionary
    """
    if isinstance(error, BookingSyncError):
        message = user_message or error.message
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": "".join(traceback.format_exception(error))}
        recoverable = True

    if log_error:
        logger.error(
            f"[{code}] {message}",
            extra={"details": details},
            exc_info=error,
        )

    return {
        "error_type": error.__class__.__name__,
        "code": code,
        "message": message,
        "details": details,
        "recoverable": recoverable,
    }


class ErrorContext:
    """
    Context manager for error handling with automatic logging.

    Usage:
        with ErrorContext("Continuous appointment sync", recoverable=True):
            for merged in engine.subscribe_continuous(EntityType.APPOINTMENT):
                ...

        # On error, logs "Error during: Continuous appointment sync"
    """

    def __init__(self, operation: str, recoverable: bool = True):
        self.operation = operation
        self.recoverable = recoverable
        self.error: Optional[Dict[str, Any]] = None

    def __enter__(self) -> ErrorContext:
        logger.info(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            logger.info(f"Completed: {self.operation}")
            return False

        if not isinstance(exc_val, Exception):
            return False

        if isinstance(exc_val, BookingSyncError):
            self.error = handle_error(exc_val)
        else:
            self.error = handle_error(
                exc_val,
                user_message=f"Error during: {self.operation}",
            )

        # Suppress exception if recoverable
        return self.recoverable
