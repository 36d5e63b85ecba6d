"""
Shared fixtures for alerting unit tests.

Everything runs in-process: the test-harness dispatcher records
notifications and escalation rules use sub-second offsets.
"""

import pytest
import pytest_asyncio

from careline.alerting.broadcaster import Broadcaster
from careline.alerting.cases import EmergencyCaseService
from careline.alerting.channels import DispatcherRegistry
from careline.alerting.dispatchers.test_harness_dispatcher import TestHarnessDispatcher
from careline.alerting.emergency_case import EscalationRule
from careline.alerting.notifier import Notifier
from careline.alerting.queue import PatientWorkQueue
from careline.alerting.responders import InMemoryResponderDirectory, Responder
from careline.alerting.scheduler import EscalationScheduler
from careline.alerting.store import (
    EmergencyContact,
    InMemoryCaseStore,
    MeasurementStore,
    Patient,
    PatientRegistry,
)


def fast_rules(step: float = 0.1) -> list[EscalationRule]:
    """Four escalation rules ``step`` seconds apart → levels 2..5."""
    return [
        EscalationRule(offset_seconds=step * i, target_level=level)
        for i, level in enumerate([2, 3, 4, 5], start=1)
    ]


def slow_rules() -> list[EscalationRule]:
    return [EscalationRule.minutes(m, lvl) for m, lvl in [(5, 2), (15, 3), (30, 4), (60, 5)]]


@pytest.fixture
def patients():
    return PatientRegistry([
        Patient(
            patient_id="PT-1",
            name="Ada Patient",
            emergency_contacts=[
                EmergencyContact(name="Ben", relationship="son", phone="+15550001"),
            ],
        ),
        Patient(patient_id="PT-2", name="Cy Patient"),
    ])


@pytest.fixture
def responders():
    return InMemoryResponderDirectory([
        Responder(responder_id="DR-SENIOR", experience_years=20),
        Responder(responder_id="DR-MID", experience_years=10),
        Responder(responder_id="RN-1", experience_years=5),
        Responder(responder_id="RN-2", experience_years=3),
        Responder(responder_id="RN-3", experience_years=1),
        Responder(responder_id="SUP-1", roles=["supervisor"], available=False),
    ])


@pytest.fixture
def harness():
    return TestHarnessDispatcher()


@pytest.fixture
def registry(harness):
    reg = DispatcherRegistry(max_attempts=2, retry_delay=0)
    reg.register(harness)
    return reg


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def notifier(registry, responders):
    return Notifier(registry, directory=responders, default_channel="test_harness")


@pytest.fixture
def case_store():
    return InMemoryCaseStore()


@pytest.fixture
def measurements():
    return MeasurementStore()


def build_service(case_store, patients, responders, notifier, broadcaster, rules):
    scheduler = EscalationScheduler()
    service = EmergencyCaseService(
        case_store=case_store,
        patients=patients,
        responders=responders,
        scheduler=scheduler,
        notifier=notifier,
        broadcaster=broadcaster,
        rules_factory=lambda: list(rules),
    )
    scheduler.set_processor(service.escalate)
    return service, scheduler


@pytest_asyncio.fixture
async def fast_service(case_store, patients, responders, notifier, broadcaster):
    """Case service whose escalation timers fire every 0.1s."""
    service, scheduler = build_service(
        case_store, patients, responders, notifier, broadcaster, fast_rules()
    )
    await scheduler.start()
    yield service
    await scheduler.stop()
    await notifier.drain(timeout=1)


@pytest_asyncio.fixture
async def service(case_store, patients, responders, notifier, broadcaster):
    """Case service with production-length timers (never fire during a test)."""
    service, scheduler = build_service(
        case_store, patients, responders, notifier, broadcaster, slow_rules()
    )
    await scheduler.start()
    yield service
    await scheduler.stop()
    await notifier.drain(timeout=1)


@pytest_asyncio.fixture
async def work_queue():
    queue = PatientWorkQueue(idle_timeout_seconds=60)
    await queue.start()
    yield queue
    await queue.stop()
