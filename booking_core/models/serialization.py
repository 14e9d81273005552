# =============================================================================
# booking_core/models/serialization.py
# Wire format for entities (flat camelCase records)
# =============================================================================
"""
Conversion between entities and the flat records exchanged with the backend
and stored in the local tables.

Date-times are timezone-naive wall-clock values. They are written in ISO-8601
extended local form; on the way in both the bare local form and a
zone-qualified form are accepted so records authored by other clients are not
dropped.
"""

from __future__ import annotations
import json
import numbers
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping

from .entities import (
    Appointment,
    AppointmentStatus,
    Entity,
    EntityType,
    Patient,
)

# Optional "[Region/City]" suffix produced by zoned ISO formatters
_ZONE_ID_SUFFIX = re.compile(r"\[[^\]]+\]$")

# Bare local date-time: date, 'T', time with optional fraction, nothing after
_LOCAL_DATETIME = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d{1,9})?)?$"
)


def format_local_datetime(value: datetime) -> str:
    """ISO-8601 extended local date-time (no offset)."""
    if value.tzinfo is not None:
        value = value.replace(tzinfo=None)
    return value.isoformat()


def _trim_fraction(text: str) -> str:
    # datetime.fromisoformat accepts at most microseconds
    match = re.search(r"\.(\d+)", text)
    if match and len(match.group(1)) > 6:
        text = text[: match.start(1) + 6] + text[match.end(1):]
    return text


def parse_local_datetime(text: str) -> datetime:
    """
    Parse a wall-clock date-time.

    The bare local form is tried first. A zone-qualified value
    (``Z``, ``+02:00``, optionally followed by ``[Europe/Paris]``) keeps its
    local date and time fields and drops the zone.

    Raises:
        ValueError: if the text is neither form
    """
    if not isinstance(text, str):
        raise ValueError(f"Expected ISO date-time string, got {type(text).__name__}")

    candidate = text.strip()
    if _LOCAL_DATETIME.match(candidate):
        return datetime.fromisoformat(_trim_fraction(candidate))

    candidate = _ZONE_ID_SUFFIX.sub("", candidate)
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"

    parsed = datetime.fromisoformat(_trim_fraction(candidate))
    if parsed.tzinfo is None:
        # Accepted by fromisoformat but not by the local pattern (e.g. a space separator)
        return parsed
    return parsed.replace(tzinfo=None)


def parse_timestamp(value: Any) -> int:
    """
    Decode a last-modified/creation stamp to epoch milliseconds.

    Accepts integer/float milliseconds or an ISO string (naive values are UTC),
    which is what a ``timestamptz`` column returns.
    """
    if isinstance(value, bool):
        raise ValueError("Boolean is not a timestamp")
    if isinstance(value, numbers.Real):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(_trim_fraction(text))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def entity_to_record(entity: Entity) -> Dict[str, Any]:
    """Serialize an entity to its flat wire/storage record."""
    if isinstance(entity, Patient):
        return {
            "id": entity.id,
            "name": entity.name,
            "email": entity.email,
            "phone": entity.phone,
            "dateOfBirth": entity.date_of_birth.isoformat(),
            "address": entity.address,
            "medicalHistory": entity.medical_history,
            "createdAt": entity.created_at,
            "updatedAt": entity.updated_at,
        }
    if isinstance(entity, Appointment):
        return {
            "id": entity.id,
            "patientId": entity.patient_id,
            "dateTime": format_local_datetime(entity.date_time),
            "status": entity.status.value,
            "notes": entity.notes,
            "createdAt": entity.created_at,
            "updatedAt": entity.updated_at,
        }
    raise TypeError(f"Not an entity: {type(entity).__name__}")


def entity_from_record(entity_type: EntityType, record: Mapping[str, Any]) -> Entity:
    """
    Build an entity from a flat record.

    Raises:
        ValueError: on missing identifiers or undecodable fields
    """
    entity_id = record.get("id")
    if not entity_id:
        raise ValueError("Record has no identifier")

    created_at = parse_timestamp(record.get("createdAt", 0))
    updated_at = parse_timestamp(record.get("updatedAt", created_at))

    try:
        if entity_type is EntityType.PATIENT:
            return Patient(
                id=str(entity_id),
                name=record["name"],
                email=record.get("email") or "",
                phone=record.get("phone") or "",
                date_of_birth=date.fromisoformat(str(record["dateOfBirth"])[:10]),
                address=record.get("address") or "",
                medical_history=record.get("medicalHistory") or "",
                created_at=created_at,
                updated_at=updated_at,
            )

        return Appointment(
            id=str(entity_id),
            patient_id=str(record["patientId"]),
            date_time=parse_local_datetime(record["dateTime"]),
            status=AppointmentStatus(str(record.get("status") or "SCHEDULED").upper()),
            notes=record.get("notes") or "",
            created_at=created_at,
            updated_at=updated_at,
        )
    except KeyError as e:
        raise ValueError(f"Record {entity_id} is missing field {e.args[0]}") from e


def canonical_form(entity: Entity) -> str:
    """Stable textual form of a record, used for deterministic ordering and digests."""
    return json.dumps(entity_to_record(entity), sort_keys=True, separators=(",", ":"))
