import os
import tempfile
from datetime import date, timedelta
from types import SimpleNamespace

_db_dir = tempfile.mkdtemp(prefix="carebridge-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'carebridge.db')}"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256"
os.environ["ENVIRONMENT"] = "test"

import pytest
from fastapi.testclient import TestClient

from carebridge import config
from carebridge.database.connection import engine, Base
from carebridge.main import app
from carebridge.realtime import manager

DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


@pytest.fixture(autouse=True)
def fresh_database(monkeypatch):
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    manager.active_connections.clear()
    monkeypatch.setattr(config, "LLM_API_KEY", None)
    yield


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def register(client):
    """Register a user; the returned dict carries ready-made auth headers"""
    def _register(email, role="patient", first_name="Test", **extra):
        payload = {
            "email": email,
            "password": "secret123",
            "first_name": first_name,
            "last_name": role.title(),
            "role": role,
            **extra,
        }
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 201, response.text
        user = response.json()
        user["headers"] = {"Authorization": f"Bearer {user['token']}"}
        return user
    return _register


@pytest.fixture
def booking_day():
    return date.today() + timedelta(days=7)


@pytest.fixture
def clinic(client, register):
    """A hospital with one staff member, one available doctor and two patients"""
    staff = register("staff@example.com", role="staff")
    response = client.post("/api/hospitals", json={
        "name": "City General",
        "address": "1 Main Street",
        "latitude": 12.9716,
        "longitude": 77.5946,
    }, headers=staff["headers"])
    assert response.status_code == 201, response.text
    hospital = response.json()

    doctor = register("doctor@example.com", role="doctor", hospital_id=hospital["id"],
                      specialization="Cardiology")
    for day in DAYS:
        response = client.put(f"/api/doctors/profile/availability/{day}", json={
            "start_time": "08:00",
            "end_time": "18:00",
        }, headers=doctor["headers"])
        assert response.status_code == 200, response.text

    return SimpleNamespace(
        staff=staff,
        hospital=hospital,
        doctor=doctor,
        patient=register("ana@example.com", first_name="Ana"),
        other_patient=register("ben@example.com", first_name="Ben"),
    )
