# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import pytest
from datetime import date, datetime
from unittest.mock import MagicMock

from booking_core.config import SyncConfig
from booking_core.data import InMemoryRemoteClient
from booking_core.models import Appointment, AppointmentStatus, Patient
from booking_core.offline import ChangePublisher, EntityStore, SyncEngine


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

def make_patient(entity_id, name, updated_at=1_000, **fields):
    """Patient with fixed stamps so tests control merge order."""
    values = dict(
        email=f"{name.lower()}@example.com",
        phone="555-0100",
        date_of_birth=date(1990, 1, 1),
        address="1 Main St",
        medical_history="",
        created_at=500,
        updated_at=updated_at,
    )
    values.update(fields)
    return Patient(id=entity_id, name=name, **values)


def make_appointment(entity_id, patient_id, updated_at=1_000, **fields):
    values = dict(
        date_time=datetime(2024, 3, 1, 9, 30),
        status=AppointmentStatus.SCHEDULED,
        notes="",
        created_at=500,
        updated_at=updated_at,
    )
    values.update(fields)
    return Appointment(id=entity_id, patient_id=patient_id, **values)


@pytest.fixture
def alice():
    return make_patient("a", "Alice")


@pytest.fixture
def bob():
    return make_patient("b", "Bob")


@pytest.fixture
def sample_appointments():
    """Three appointments for patient 'a'"""
    return [
        make_appointment("x1", "a", date_time=datetime(2024, 3, 1, 9, 0)),
        make_appointment("x2", "a", date_time=datetime(2024, 3, 2, 10, 30)),
        make_appointment("x3", "a", date_time=datetime(2024, 3, 3, 14, 0),
                         status=AppointmentStatus.COMPLETED),
    ]


# =============================================================================
# COMPONENT FIXTURES
# =============================================================================

@pytest.fixture
def store(tmp_path):
    """Fresh on-disk store per test"""
    entity_store = EntityStore(tmp_path / "booking.db")
    yield entity_store
    entity_store.close()


@pytest.fixture
def remote():
    """In-memory backend"""
    client = InMemoryRemoteClient()
    yield client
    client.close()


@pytest.fixture
def publisher():
    return ChangePublisher()


@pytest.fixture
def sync_config():
    return SyncConfig(
        remote_provider="memory",
        batch_size=50,
        max_resubscribe_attempts=2,
        backoff_base=0.01,
        check_connectivity=False,
    )


@pytest.fixture
def engine(store, remote, publisher, sync_config):
    sync_engine = SyncEngine(store, remote, publisher, sync_config)
    yield sync_engine
    sync_engine.stop()


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    table = mock_client.table.return_value
    table.select.return_value.order.return_value.range.return_value.execute.return_value.data = []
    table.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
    table.upsert.return_value.execute.return_value = MagicMock()
    table.delete.return_value.in_.return_value.execute.return_value = MagicMock()
    return mock_client


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def as_set(entities):
    """Merge output order is not meaningful; compare as sets"""
    return set(entities)


def ids(entities):
    return {e.id for e in entities}
