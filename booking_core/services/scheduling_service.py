# =============================================================================
# booking_core/services/scheduling_service.py
# Patient and appointment commands
# =============================================================================
"""
SchedulingService - The commands behind the patient and appointment screens.

Every write lands in the local store first and is stamped with a fresh
last-modified time. When a remote client is attached the change is then pushed
best-effort; a remote failure is logged and left for the next sync pass.
"""

from __future__ import annotations
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence

from booking_core.errors import RemoteRejected, RemoteUnavailable
from booking_core.models import (
    Appointment,
    AppointmentStatus,
    Entity,
    EntityType,
    Patient,
    new_id,
    next_timestamp,
)
from booking_core.data.base_client import RemoteClient
from booking_core.offline.entity_store import EntityStore, LiveQuery
from .base_service import BaseService, ServiceResult


class SchedulingService(BaseService):
    """
    Patient and appointment lifecycle.

    Usage:
        service = SchedulingService(store, remote)
        result = service.create_patient("Alice", "alice@example.com", "555-0100", date(1990, 1, 1))
        if result:
            patient = result.data
    """

    def __init__(self, store: EntityStore, remote: Optional[RemoteClient] = None):
        super().__init__()
        self.store = store
        self.remote = remote

    # =========================================================================
    # REMOTE PUSH
    # =========================================================================

    def _push(self, entity: Entity) -> None:
        if self.remote is None:
            return
        try:
            self.remote.sync_up(entity.entity_type, [entity])
        except (RemoteUnavailable, RemoteRejected) as e:
            self.logger.warning(
                f"Could not push {entity.entity_type.table} {entity.id}, "
                f"left for next sync: {e.message}"
            )

    def _push_delete(self, entity_type: EntityType, entity_ids: Sequence[str]) -> None:
        if self.remote is None or not entity_ids:
            return
        try:
            self.remote.delete(entity_type, list(entity_ids))
        except (RemoteUnavailable, RemoteRejected) as e:
            self.logger.warning(
                f"Could not delete {len(entity_ids)} {entity_type.table} remotely, "
                f"left for next sync: {e.message}"
            )

    # =========================================================================
    # PATIENTS
    # =========================================================================

    @staticmethod
    def _validate_patient(name: str, date_of_birth: date) -> None:
        if not name or not name.strip():
            raise ValueError("Patient name is required")
        if date_of_birth > date.today():
            raise ValueError("Date of birth cannot be in the future")

    def create_patient(
        self,
        name: str,
        email: str,
        phone: str,
        date_of_birth: date,
        address: str = "",
        medical_history: str = "",
    ) -> ServiceResult:
        def _create() -> Patient:
            self._validate_patient(name, date_of_birth)
            stamp = next_timestamp()
            patient = Patient(
                id=new_id(),
                name=name.strip(),
                email=email.strip(),
                phone=phone.strip(),
                date_of_birth=date_of_birth,
                address=address,
                medical_history=medical_history,
                created_at=stamp,
                updated_at=stamp,
            )
            self.store.upsert(patient)
            self._push(patient)
            return patient

        return self.safe_execute("Creating patient", _create)

    def update_patient(self, patient: Patient, **changes) -> ServiceResult:
        """Apply field changes (e.g. ``phone="..."``) to a stored patient."""
        def _update() -> Patient:
            if self.store.get_by_id(EntityType.PATIENT, patient.id) is None:
                raise ValueError(f"Unknown patient: {patient.id}")
            updated = patient.touch(**changes)
            self._validate_patient(updated.name, updated.date_of_birth)
            self.store.upsert(updated)
            self._push(updated)
            return updated

        return self.safe_execute(f"Updating patient {patient.id}", _update)

    def delete_patient(self, patient: Patient) -> ServiceResult:
        """Delete a patient together with its appointments."""
        def _delete() -> bool:
            appointment_ids = [a.id for a in self.store.appointments_for_patient(patient.id).current()]
            existed = self.store.delete(patient)
            self._push_delete(EntityType.APPOINTMENT, appointment_ids)
            self._push_delete(EntityType.PATIENT, [patient.id])
            return existed

        return self.safe_execute(f"Deleting patient {patient.id}", _delete)

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        return self.store.get_by_id(EntityType.PATIENT, patient_id)

    def patients(self) -> LiveQuery:
        return self.store.get_all(EntityType.PATIENT)

    def search_patients(self, query: str) -> LiveQuery:
        return self.store.search_patients(query)

    # =========================================================================
    # APPOINTMENTS
    # =========================================================================

    def _require_patient(self, patient_id: str) -> None:
        if self.store.get_by_id(EntityType.PATIENT, patient_id) is None:
            raise ValueError(f"Unknown patient: {patient_id}")

    def create_appointment(
        self,
        patient_id: str,
        date_time: datetime,
        notes: str = "",
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    ) -> ServiceResult:
        """Book an appointment for an existing patient."""
        def _create() -> Appointment:
            self._require_patient(patient_id)
            stamp = next_timestamp()
            appointment = Appointment(
                id=new_id(),
                patient_id=patient_id,
                date_time=date_time.replace(tzinfo=None),
                status=status,
                notes=notes,
                created_at=stamp,
                updated_at=stamp,
            )
            self.store.upsert(appointment)
            self._push(appointment)
            return appointment

        return self.safe_execute("Creating appointment", _create)

    def update_appointment(self, appointment: Appointment, **changes) -> ServiceResult:
        def _update() -> Appointment:
            if self.store.get_by_id(EntityType.APPOINTMENT, appointment.id) is None:
                raise ValueError(f"Unknown appointment: {appointment.id}")
            updated = appointment.touch(**changes)
            if updated.patient_id != appointment.patient_id:
                self._require_patient(updated.patient_id)
            self.store.upsert(updated)
            self._push(updated)
            return updated

        return self.safe_execute(f"Updating appointment {appointment.id}", _update)

    def update_appointment_status(self, appointment: Appointment, status: AppointmentStatus) -> ServiceResult:
        return self.update_appointment(appointment, status=status)

    def delete_appointment(self, appointment: Appointment) -> ServiceResult:
        def _delete() -> bool:
            existed = self.store.delete(appointment)
            self._push_delete(EntityType.APPOINTMENT, [appointment.id])
            return existed

        return self.safe_execute(f"Deleting appointment {appointment.id}", _delete)

    def appointments(self) -> LiveQuery:
        return self.store.get_all(EntityType.APPOINTMENT)

    def appointments_for_patient(self, patient_id: str) -> LiveQuery:
        return self.store.appointments_for_patient(patient_id)

    def appointments_by_status(self, status: AppointmentStatus) -> LiveQuery:
        return self.store.appointments_by_status(status)

    def appointments_between(self, start: datetime, end: datetime) -> LiveQuery:
        return self.store.appointments_between(start, end)

    # =========================================================================
    # SAMPLE DATA
    # =========================================================================

    def seed_sample_data(self, now: Optional[datetime] = None) -> ServiceResult:
        """
        Fill an empty store with three patients and four appointments.

        Does nothing when patients already exist.
        """
        def _seed() -> List[Entity]:
            if self.store.count(EntityType.PATIENT) > 0:
                self.logger.info("Store already has patients, skipping sample data")
                return []

            base = (now or datetime.now()).replace(second=0, microsecond=0)
            samples = [
                ("John Doe", "john.doe@email.com", "123-456-7890", date(1980, 5, 15),
                 "123 Main St, City", "Hypertension, Allergic to penicillin"),
                ("Jane Smith", "jane.smith@email.com", "098-765-4321", date(1990, 8, 22),
                 "456 Oak Ave, Town", "Asthma"),
                ("Mike Johnson", "mike.j@email.com", "555-123-4567", date(1975, 12, 10),
                 "789 Pine Rd, Village", "Diabetes Type 2"),
            ]

            created: List[Entity] = []
            for name, email, phone, dob, address, history in samples:
                stamp = next_timestamp()
                created.append(Patient(
                    id=new_id(), name=name, email=email, phone=phone,
                    date_of_birth=dob, address=address, medical_history=history,
                    created_at=stamp, updated_at=stamp,
                ))
            john, jane, mike = created

            bookings = [
                (john, base + timedelta(days=1), 9, 0, AppointmentStatus.SCHEDULED, "Regular checkup"),
                (jane, base + timedelta(days=2), 10, 30, AppointmentStatus.SCHEDULED,
                 "Follow-up for asthma treatment"),
                (mike, base + timedelta(days=3), 14, 0, AppointmentStatus.SCHEDULED, "Referral to cardiologist"),
                (john, base - timedelta(days=1), 11, 0, AppointmentStatus.COMPLETED, "Annual flu shot"),
            ]
            appointments = []
            for patient, day, hour, minute, status, notes in bookings:
                stamp = next_timestamp()
                appointments.append(Appointment(
                    id=new_id(), patient_id=patient.id,
                    date_time=day.replace(hour=hour, minute=minute),
                    status=status, notes=notes,
                    created_at=stamp, updated_at=stamp,
                ))

            self.store.upsert_batch(EntityType.PATIENT, created)
            self.store.upsert_batch(EntityType.APPOINTMENT, appointments)
            for entity in created + appointments:
                self._push(entity)

            return created + appointments

        return self.safe_execute("Seeding sample data", _seed)
