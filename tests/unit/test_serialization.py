# =============================================================================
# tests/unit/test_serialization.py
# Unit Tests for the entity wire format
# =============================================================================

import pytest
from datetime import date, datetime

import numpy as np

from conftest import make_appointment, make_patient


class TestLocalDateTimeParsing:
    """Bare and zone-qualified date-times"""

    def test_bare_local_form(self):
        from booking_core.models import parse_local_datetime

        assert parse_local_datetime("2024-03-01T09:30:00") == datetime(2024, 3, 1, 9, 30)

    def test_bare_form_without_seconds(self):
        from booking_core.models import parse_local_datetime

        assert parse_local_datetime("2024-03-01T09:30") == datetime(2024, 3, 1, 9, 30)

    def test_nanosecond_fraction_is_truncated(self):
        from booking_core.models import parse_local_datetime

        parsed = parse_local_datetime("2024-03-01T09:30:00.123456789")
        assert parsed == datetime(2024, 3, 1, 9, 30, 0, 123456)

    def test_offset_form_keeps_wall_clock(self):
        from booking_core.models import parse_local_datetime

        parsed = parse_local_datetime("2024-03-01T09:30:00+02:00")
        assert parsed == datetime(2024, 3, 1, 9, 30)
        assert parsed.tzinfo is None

    def test_utc_designator_and_zone_id(self):
        from booking_core.models import parse_local_datetime

        assert parse_local_datetime("2024-03-01T09:30:00Z") == datetime(2024, 3, 1, 9, 30)
        assert parse_local_datetime(
            "2024-03-01T09:30:00+01:00[Europe/Paris]"
        ) == datetime(2024, 3, 1, 9, 30)

    def test_garbage_raises_value_error(self):
        from booking_core.models import parse_local_datetime

        with pytest.raises(ValueError):
            parse_local_datetime("next tuesday")

    def test_format_drops_offset(self):
        from datetime import timezone
        from booking_core.models import format_local_datetime

        value = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
        assert format_local_datetime(value) == "2024-03-01T09:30:00"


class TestTimestamps:
    """Last-modified stamps in any representation the backend may return"""

    def test_integer_and_numpy_integer(self):
        from booking_core.models import parse_timestamp

        assert parse_timestamp(1_700_000_000_000) == 1_700_000_000_000
        assert parse_timestamp(np.int64(42)) == 42

    def test_digit_string(self):
        from booking_core.models import parse_timestamp

        assert parse_timestamp("1700000000000") == 1_700_000_000_000

    def test_iso_timestamptz(self):
        from booking_core.models import parse_timestamp

        assert parse_timestamp("1970-01-01T00:00:01+00:00") == 1_000
        assert parse_timestamp("1970-01-01T00:00:01Z") == 1_000

    def test_boolean_rejected(self):
        from booking_core.models import parse_timestamp

        with pytest.raises(ValueError):
            parse_timestamp(True)


class TestRecords:
    """Entity <-> flat record"""

    def test_patient_record_uses_wire_names(self):
        from booking_core.models import entity_to_record

        record = entity_to_record(make_patient("a", "Alice", medical_history="Asthma"))

        assert record["dateOfBirth"] == "1990-01-01"
        assert record["medicalHistory"] == "Asthma"
        assert record["updatedAt"] == 1_000

    def test_appointment_record(self):
        from booking_core.models import AppointmentStatus, entity_to_record

        record = entity_to_record(make_appointment(
            "x", "a", status=AppointmentStatus.NO_SHOW, date_time=datetime(2024, 5, 6, 7, 8)
        ))

        assert record["patientId"] == "a"
        assert record["dateTime"] == "2024-05-06T07:08:00"
        assert record["status"] == "NO_SHOW"

    def test_record_from_another_client(self):
        """Zone-qualified date-time, ISO stamps and lower-case status are accepted"""
        from booking_core.models import AppointmentStatus, EntityType, entity_from_record

        appointment = entity_from_record(EntityType.APPOINTMENT, {
            "id": "x",
            "patientId": "a",
            "dateTime": "2024-03-01T09:30:00Z",
            "status": "completed",
            "notes": None,
            "createdAt": "2024-03-01T00:00:00+00:00",
            "updatedAt": "2024-03-01T00:00:01+00:00",
        })

        assert appointment.date_time == datetime(2024, 3, 1, 9, 30)
        assert appointment.status is AppointmentStatus.COMPLETED
        assert appointment.notes == ""
        assert appointment.updated_at - appointment.created_at == 1_000

    def test_missing_fields_raise_value_error(self):
        from booking_core.models import EntityType, entity_from_record

        with pytest.raises(ValueError):
            entity_from_record(EntityType.PATIENT, {"id": "a", "name": "Alice"})
        with pytest.raises(ValueError):
            entity_from_record(EntityType.PATIENT, {"name": "No id", "dateOfBirth": "1990-01-01"})

    def test_canonical_form_is_order_independent(self):
        from booking_core.models import canonical_form

        patient = make_patient("a", "Alice")
        assert canonical_form(patient) == canonical_form(make_patient("a", "Alice"))
        assert canonical_form(patient) != canonical_form(make_patient("a", "Alicia"))


class TestIdentityAndClock:

    def test_timestamps_strictly_increase(self):
        from booking_core.models import next_timestamp

        stamps = [next_timestamp() for _ in range(1000)]
        assert all(b > a for a, b in zip(stamps, stamps[1:]))

    def test_touch_refreshes_stamp(self):
        patient = make_patient("a", "Alice")
        touched = patient.touch(phone="555-9999")

        assert touched.phone == "555-9999"
        assert touched.updated_at > patient.updated_at
        assert touched.id == patient.id

    def test_new_ids_are_unique(self):
        from booking_core.models import new_id

        assert len({new_id() for _ in range(100)}) == 100

    def test_date_of_birth_type(self):
        assert isinstance(make_patient("a", "Alice").date_of_birth, date)
