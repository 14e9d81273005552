# =============================================================================
# booking_core/models/__init__.py
# Entity records and their wire format
# =============================================================================

from booking_core.models.entities import (
    Appointment,
    AppointmentStatus,
    Entity,
    EntityType,
    ENTITY_CLASSES,
    Patient,
    new_id,
    next_timestamp,
)

from booking_core.models.serialization import (
    canonical_form,
    entity_from_record,
    entity_to_record,
    format_local_datetime,
    parse_local_datetime,
    parse_timestamp,
)

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "Entity",
    "EntityType",
    "ENTITY_CLASSES",
    "Patient",
    "new_id",
    "next_timestamp",
    "canonical_form",
    "entity_from_record",
    "entity_to_record",
    "format_local_datetime",
    "parse_local_datetime",
    "parse_timestamp",
]
