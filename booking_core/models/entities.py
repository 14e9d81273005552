# =============================================================================
# booking_core/models/entities.py
# Patient and Appointment records
# =============================================================================
"""
Domain records shared by the local store, the remote client and the merge.

Entities are immutable snapshots: every mutation produces a new instance via
``dataclasses.replace`` so collections can be handed between sync stages
without copying.
"""

from __future__ import annotations
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Union


class EntityType(Enum):
    """Synchronized entity collections, valued by their table name."""
    PATIENT = "patients"
    APPOINTMENT = "appointments"

    @property
    def table(self) -> str:
        return self.value


class AppointmentStatus(Enum):
    """Appointment lifecycle states (wire value = upper-case name)."""
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


_clock_lock = threading.Lock()
_last_timestamp = 0


def next_timestamp() -> int:
    """
    Return a strictly increasing wall-clock timestamp in epoch milliseconds.

    Two calls in the same process never return the same value, even within one
    millisecond or across a backwards clock step.
    """
    global _last_timestamp
    with _clock_lock:
        now = time.time_ns() // 1_000_000
        _last_timestamp = max(now, _last_timestamp + 1)
        return _last_timestamp


def new_id() -> str:
    """Client-generated identifier, assignable before the record ever leaves the device."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Patient:
    id: str
    name: str
    email: str
    phone: str
    date_of_birth: date
    address: str
    medical_history: str = ""
    created_at: int = field(default_factory=next_timestamp)
    updated_at: int = field(default_factory=next_timestamp)

    entity_type = EntityType.PATIENT

    def touch(self, **changes) -> Patient:
        """Copy with field changes applied and a fresh last-modified stamp."""
        return replace(self, **changes, updated_at=next_timestamp())


@dataclass(frozen=True)
class Appointment:
    id: str
    patient_id: str
    date_time: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notes: str = ""
    created_at: int = field(default_factory=next_timestamp)
    updated_at: int = field(default_factory=next_timestamp)

    entity_type = EntityType.APPOINTMENT

    def touch(self, **changes) -> Appointment:
        """Copy with field changes applied and a fresh last-modified stamp."""
        return replace(self, **changes, updated_at=next_timestamp())


Entity = Union[Patient, Appointment]

ENTITY_CLASSES = {
    EntityType.PATIENT: Patient,
    EntityType.APPOINTMENT: Appointment,
}
