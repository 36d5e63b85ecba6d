"""
Shared fixtures for the CareLine API test suite.

The app runs with in-memory stores and the test-harness channel; SMS and
email dispatchers stay unregistered because their credentials are unset.
"""

import pytest
from fastapi.testclient import TestClient

from careline import settings

PATIENTS = [
    {
        "patient_id": "PT-100",
        "name": "Ada Lovelace",
        "emergency_contacts": [
            {"name": "Byron", "relationship": "father", "phone": "+447700900001"},
        ],
    },
    {"patient_id": "PT-200", "name": "Grace Hopper"},
]

RESPONDERS = [
    {"responder_id": "DR-A", "name": "Dr A", "experience_years": 15},
    {"responder_id": "RN-B", "name": "Nurse B", "experience_years": 6},
    {"responder_id": "SUP-C", "name": "Sup C", "roles": ["supervisor"], "available": False},
]


@pytest.fixture
def alerting_env(monkeypatch):
    monkeypatch.setattr(settings, "CASE_STORE", "memory")
    monkeypatch.setattr(settings, "PATIENTS_FILE", "")
    monkeypatch.setattr(settings, "RESPONDERS_FILE", "")
    for var in ("TWILIO_ACCOUNT_SID", "SENDGRID_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def _seed(client: TestClient) -> None:
    for patient in PATIENTS:
        assert client.post("/api/registry/patients", json=patient).status_code == 201
    for responder in RESPONDERS:
        assert client.post("/api/registry/responders", json=responder).status_code == 201


@pytest.fixture
def test_client(alerting_env):
    """TestClient with production escalation offsets (minutes)."""
    from careline.app import app

    with TestClient(app) as client:
        _seed(client)
        yield client


@pytest.fixture
def fast_client(alerting_env):
    """TestClient whose escalation levels fire every ~0.1s."""
    alerting_env.setattr(settings, "ESCALATION_OFFSETS_MINUTES", [0.002, 0.004, 0.006, 0.008])
    from careline.app import app

    with TestClient(app) as client:
        _seed(client)
        yield client
