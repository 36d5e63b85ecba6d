"""
Alerting Setup — initializes and wires together all alerting components.

Called once during app startup.  Tests can call ``initialize_alerting``
with their own rules or stores and ``shutdown_alerting`` afterwards.
"""

from __future__ import annotations

import logging
import os
from typing import Callable

from careline import settings
from careline.alerting.aggregator import CaseAggregator
from careline.alerting.broadcaster import Broadcaster
from careline.alerting.cases import EmergencyCaseService
from careline.alerting.devices import DeviceRegistry
from careline.alerting.channels import DispatcherRegistry
from careline.alerting.dispatchers.email_dispatcher import EmailDispatcher
from careline.alerting.dispatchers.test_harness_dispatcher import (
    TestHarnessDispatcher,
)
from careline.alerting.dispatchers.twilio_dispatcher import TwilioSMSDispatcher
from careline.alerting.dispatchers.websocket_dispatcher import (
    WebSocketDispatcher,
)
from careline.alerting.emergency_case import EscalationRule, default_escalation_rules
from careline.alerting.ingest import MeasurementIngestor
from careline.alerting.notifier import Notifier
from careline.alerting.queue import PatientWorkQueue
from careline.alerting.responders import InMemoryResponderDirectory
from careline.alerting.scheduler import EscalationScheduler
from careline.alerting.store import (
    GCSCaseStore,
    InMemoryCaseStore,
    MeasurementStore,
    PatientRegistry,
)
from careline.alerting.trends import TrendAnalyzer

logger = logging.getLogger("alerting.setup")

# Module-level singletons (set during initialize)
_patients: PatientRegistry | None = None
_responders: InMemoryResponderDirectory | None = None
_devices: DeviceRegistry | None = None
_measurements: MeasurementStore | None = None
_case_store: InMemoryCaseStore | None = None
_broadcaster: Broadcaster | None = None
_dispatcher_registry: DispatcherRegistry | None = None
_test_harness: TestHarnessDispatcher | None = None
_notifier: Notifier | None = None
_scheduler: EscalationScheduler | None = None
_queue: PatientWorkQueue | None = None
_case_service: EmergencyCaseService | None = None
_aggregator: CaseAggregator | None = None
_ingestor: MeasurementIngestor | None = None


def _build_case_store() -> InMemoryCaseStore:
    if settings.CASE_STORE == "gcs":
        from careline.dependencies import get_gcs

        store = GCSCaseStore(get_gcs())
        store.recover()
        return store
    return InMemoryCaseStore()


async def initialize_alerting(
    case_store: InMemoryCaseStore | None = None,
    rules_factory: Callable[[], list[EscalationRule]] = default_escalation_rules,
) -> EmergencyCaseService:
    """Wire together all alerting components and start background tasks."""
    global _patients, _responders, _devices, _measurements, _case_store, _broadcaster
    global _dispatcher_registry, _test_harness, _notifier, _scheduler
    global _queue, _case_service, _aggregator, _ingestor

    logger.info("Initializing CareLine alerting...")

    # 1. Registries and stores
    _patients = PatientRegistry()
    if settings.PATIENTS_FILE:
        _patients.load_file(settings.PATIENTS_FILE)
    _responders = InMemoryResponderDirectory()
    if settings.RESPONDERS_FILE:
        _responders.load_file(settings.RESPONDERS_FILE)
    _devices = DeviceRegistry(_patients)
    _measurements = MeasurementStore()
    _case_store = case_store if case_store is not None else _build_case_store()

    # 2. Broadcaster + dispatchers
    _broadcaster = Broadcaster()
    _dispatcher_registry = DispatcherRegistry()
    _dispatcher_registry.register(WebSocketDispatcher(_broadcaster))
    _test_harness = TestHarnessDispatcher()
    _dispatcher_registry.register(_test_harness)
    _register_external_dispatchers(_dispatcher_registry)

    # 3. Notifier
    _notifier = Notifier(_dispatcher_registry, directory=_responders)

    # 4. Scheduler + state machine
    _scheduler = EscalationScheduler()
    _case_service = EmergencyCaseService(
        case_store=_case_store,
        patients=_patients,
        responders=_responders,
        scheduler=_scheduler,
        notifier=_notifier,
        broadcaster=_broadcaster,
        rules_factory=rules_factory,
    )
    _scheduler.set_processor(_case_service.escalate)
    await _scheduler.start()

    # 5. Per-patient queue, aggregator, ingest pipeline
    _queue = PatientWorkQueue()
    await _queue.start()
    _aggregator = CaseAggregator(_case_service, _queue)
    _ingestor = MeasurementIngestor(
        patients=_patients,
        measurements=_measurements,
        trend_analyzer=TrendAnalyzer(_measurements),
        aggregator=_aggregator,
        broadcaster=_broadcaster,
        devices=_devices,
    )

    _rearm_open_cases(_case_store, _scheduler)

    logger.info(
        "Alerting initialized: channels=%s, store=%s",
        _dispatcher_registry.registered_channels,
        type(_case_store).__name__,
    )
    return _case_service


def _rearm_open_cases(store: InMemoryCaseStore, scheduler: EscalationScheduler) -> None:
    """Re-arm timers for cases recovered from persistent storage."""
    for case in store.all():
        if not case.is_open or not case.escalation.rules:
            continue
        remaining = [r for r in case.escalation.rules if r.target_level > case.escalation.level]
        if remaining:
            scheduler.arm(case.case_id, remaining, case.created_at)


async def shutdown_alerting() -> None:
    """Gracefully stop background tasks."""
    if _queue:
        await _queue.stop()
    if _scheduler:
        await _scheduler.stop()
    if _notifier:
        await _notifier.drain(timeout=5)
    logger.info("Alerting shutdown complete")


def get_patients() -> PatientRegistry | None:
    return _patients


def get_responders() -> InMemoryResponderDirectory | None:
    return _responders


def get_devices() -> DeviceRegistry | None:
    return _devices


def get_measurements() -> MeasurementStore | None:
    return _measurements


def get_broadcaster() -> Broadcaster | None:
    return _broadcaster


def get_dispatcher_registry() -> DispatcherRegistry | None:
    return _dispatcher_registry


def get_test_harness() -> TestHarnessDispatcher | None:
    return _test_harness


def get_notifier() -> Notifier | None:
    return _notifier


def get_scheduler() -> EscalationScheduler | None:
    return _scheduler


def get_queue() -> PatientWorkQueue | None:
    return _queue


def get_case_service() -> EmergencyCaseService | None:
    return _case_service


def get_aggregator() -> CaseAggregator | None:
    return _aggregator


def get_ingestor() -> MeasurementIngestor | None:
    return _ingestor


def _register_external_dispatchers(registry: DispatcherRegistry) -> None:
    """Register SMS and email dispatchers when their credentials are set."""
    if os.getenv("SENDGRID_API_KEY"):
        try:
            registry.register(EmailDispatcher())
            logger.info("Email dispatcher registered")
        except Exception as exc:
            logger.warning("Email dispatcher failed to register: %s", exc)

    if os.getenv("TWILIO_ACCOUNT_SID"):
        try:
            registry.register(TwilioSMSDispatcher())
            logger.info("Twilio SMS dispatcher registered")
        except Exception as exc:
            logger.warning("Twilio SMS dispatcher failed to register: %s", exc)
