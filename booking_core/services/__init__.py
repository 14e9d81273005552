# =============================================================================
# booking_core/services/__init__.py
# Service Layer for the scheduling app
# Separates commands from UI presentation
# =============================================================================
"""
Service Layer

Usage Example:
-------------
    from booking_core.services import SchedulingService

    service = SchedulingService(engine.store, engine.remote)
    result = service.create_patient("Alice", "alice@example.com", "555-0100", date(1990, 1, 1))
    if not result:
        print(result.error)
"""

from .base_service import BaseService, ServiceResult
from .scheduling_service import SchedulingService

__all__ = [
    # Base classes
    "BaseService",
    "ServiceResult",
    # Commands
    "SchedulingService",
]
