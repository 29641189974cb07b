"""
Shared test fixtures.

- A SQLite backend in a temporary directory
- A fixed, adjustable clock so queue days are predictable
- Stores wired the way the app wires them, and a TestClient using them
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import main
import services
from backend import SqliteBackend
from main import app, build_stores
from schemas import PatientForm


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


PATIENT_DATA = {
    "first_name": "Thandi",
    "surname": "Mokoena",
    "id_type": "id_number",
    "id_number": "9001015009087",
    "date_of_birth": "1990-01-01",
    "gender": "female",
    "contact_number": "082 555 1234",
    "address": "12 Long Street",
    "city": "Cape Town",
    "emergency_contact_name": "Sipho Mokoena",
    "emergency_contact_relationship": "Brother",
    "emergency_contact_phone": "0825559876",
    "payment_method": "cash",
}


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Keep tests off any Redis configured in the environment."""
    monkeypatch.setattr(services, "REDIS_URL", None)
    monkeypatch.setattr(main, "REDIS_URL", None)
    monkeypatch.setattr(services, "_redis_client", None)


@pytest.fixture
def backend(tmp_path):
    return SqliteBackend(str(tmp_path / "clinic.db"), str(tmp_path / "storage"))


@pytest.fixture
def clock():
    # Monday morning
    return FixedClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def stores(backend, clock):
    return build_stores(backend, clock, timezone.utc)


@pytest.fixture
def patient_data():
    """Factory for valid registration payloads."""

    def _data(**overrides):
        data = dict(PATIENT_DATA)
        data.update(overrides)
        return data

    return _data


@pytest.fixture
def make_patient(stores, patient_data):
    """Register a patient through the store and return the record."""
    counter = iter(range(1, 10000))

    def _make(**overrides):
        n = next(counter)
        overrides.setdefault("id_number", str(9001015000000 + n))
        overrides.setdefault("first_name", f"Patient{n}")
        result = stores.patients.create(PatientForm(**patient_data(**overrides)))
        assert result.success, result.error
        return result.data

    return _make


@pytest.fixture
def client(stores):
    app.state.stores = stores
    with TestClient(app) as test_client:
        yield test_client
    app.state.stores = None
