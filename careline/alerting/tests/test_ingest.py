"""
Tests for the Measurement Ingestor.

Tests cover:
  - Critical batch → record, alerts and one case
  - Warning-only batch → alerts, no case
  - Batch-level rejection when nothing is valid
  - Per-item errors on mixed batches
  - Trend summary on the record
  - Case store outage reported in errors, record still stored
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from google.api_core.exceptions import ServiceUnavailable

from careline.alerting.aggregator import CaseAggregator
from careline.alerting.cases import EmergencyCaseService
from careline.alerting.broadcaster import patient_topic
from careline.alerting.errors import UnknownPatientError, ValidationError
from careline.alerting.ingest import MeasurementBatch, MeasurementIngestor
from careline.alerting.scheduler import EscalationScheduler
from careline.alerting.store import GCSCaseStore
from careline.alerting.trends import TrendAnalyzer
from careline.alerting.vitals import MeasurementInput, OverallStatus, Parameter, Severity


@pytest.fixture
def ingestor(patients, measurements, service, work_queue, broadcaster):
    return MeasurementIngestor(
        patients=patients,
        measurements=measurements,
        trend_analyzer=TrendAnalyzer(measurements),
        aggregator=CaseAggregator(service, work_queue),
        broadcaster=broadcaster,
    )


def batch(patient_id="PT-1", **values):
    return MeasurementBatch(
        patient_id=patient_id,
        device_id="watch-01",
        measurements=[MeasurementInput(parameter=k, value=v) for k, v in values.items()],
    )


class TestCriticalBatch:

    @pytest.mark.asyncio
    async def test_bradycardia_with_fever_opens_case(self, ingestor, service, measurements):
        result = await ingestor.ingest(batch(heart_rate=35, temperature=39.5))

        assert {(a.parameter, a.severity) for a in result.alerts} == {
            ("heart_rate", Severity.CRITICAL),
            ("temperature", Severity.CRITICAL),
        }
        assert result.case_created_or_attached
        assert result.case_created
        assert result.overall_status == OverallStatus.CRITICAL

        case = service.get(result.case_id)
        assert len(case.alerts) == 2
        assert service.list_active() == [case]

        stored = measurements.latest("PT-1")
        assert stored.record_id == result.record_id
        assert stored.is_emergency
        assert stored.case_id == case.case_id

    @pytest.mark.asyncio
    async def test_second_critical_batch_attaches(self, ingestor, service):
        first = await ingestor.ingest(batch(oxygen_saturation=85))
        second = await ingestor.ingest(batch(oxygen_saturation=84))

        assert not second.case_created
        assert second.case_id == first.case_id
        assert len(service.list_active()) == 1

    @pytest.mark.asyncio
    async def test_broadcasts_vitals_update(self, ingestor, broadcaster):
        sub = broadcaster.subscribe(patient_topic("PT-1"))
        result = await ingestor.ingest(batch(heart_rate=72))

        event = await sub.get(timeout=1)
        assert event.event_type == "vital_signs_update"
        assert event.payload["record_id"] == result.record_id
        assert event.payload["values"] == {"heart_rate": 72.0}


class TestWarningBatch:

    @pytest.mark.asyncio
    async def test_warnings_do_not_open_case(self, ingestor, service):
        result = await ingestor.ingest(batch(heart_rate=45, temperature=38.9))

        assert {a.severity for a in result.alerts} == {Severity.WARNING}
        assert len(result.alerts) == 2
        assert not result.case_created_or_attached
        assert result.case_id is None
        assert result.overall_status == OverallStatus.UNKNOWN
        assert service.list_active() == []

    @pytest.mark.asyncio
    async def test_status_needs_history(self, ingestor):
        for _ in range(3):
            first = await ingestor.ingest(batch(heart_rate=72, oxygen_saturation=98))
            assert first.overall_status == OverallStatus.UNKNOWN
        result = await ingestor.ingest(batch(heart_rate=72, oxygen_saturation=98))
        assert result.alerts == []
        assert result.overall_status == OverallStatus.GOOD

    @pytest.mark.asyncio
    async def test_warning_in_window_is_concerning(self, ingestor):
        for _ in range(3):
            await ingestor.ingest(batch(heart_rate=72))
        result = await ingestor.ingest(batch(heart_rate=110))
        assert result.overall_status == OverallStatus.CONCERNING


class TestValidation:

    @pytest.mark.asyncio
    async def test_all_invalid_rejects_batch(self, ingestor, measurements, service):
        with pytest.raises(ValidationError) as exc_info:
            await ingestor.ingest(batch(oxygen_saturation=-5))

        assert exc_info.value.details[0]["parameter"] == "oxygen_saturation"
        assert measurements.count("PT-1") == 0
        assert service.list_active() == []

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, ingestor):
        with pytest.raises(ValidationError):
            await ingestor.ingest(MeasurementBatch(patient_id="PT-1"))

    @pytest.mark.asyncio
    async def test_mixed_batch_keeps_valid_items(self, ingestor, measurements):
        result = await ingestor.ingest(MeasurementBatch(
            patient_id="PT-1",
            measurements=[
                MeasurementInput(parameter="heart_rate", value=80),
                MeasurementInput(parameter="oxygen_saturation", value=140),
                MeasurementInput(parameter="blood_sugar", value=5.5),
                MeasurementInput(parameter="temperature", value="warm"),
            ],
        ))

        assert [e.index for e in result.errors] == [1, 2, 3]
        assert all(e.kind == "validation_error" for e in result.errors)
        stored = measurements.latest("PT-1")
        assert stored.values() == {Parameter.HEART_RATE: 80.0}

    @pytest.mark.asyncio
    async def test_unknown_patient_rejected(self, ingestor, measurements):
        with pytest.raises(UnknownPatientError):
            await ingestor.ingest(batch(patient_id="PT-GHOST", heart_rate=80))
        assert measurements.count("PT-GHOST") == 0

    @pytest.mark.asyncio
    async def test_record_timestamp_is_newest_measurement(self, ingestor, measurements):
        older = datetime.now(timezone.utc) - timedelta(minutes=10)
        newer = older + timedelta(minutes=5)
        await ingestor.ingest(MeasurementBatch(
            patient_id="PT-1",
            measurements=[
                MeasurementInput(parameter="heart_rate", value=80, timestamp=newer),
                MeasurementInput(parameter="temperature", value=36.8, timestamp=older),
            ],
        ))
        assert measurements.latest("PT-1").timestamp == newer

    @pytest.mark.asyncio
    async def test_fahrenheit_converted(self, ingestor, measurements):
        await ingestor.ingest(MeasurementBatch(
            patient_id="PT-1",
            measurements=[MeasurementInput(parameter="temp", value=98.6, unit="F")],
        ))
        assert measurements.latest("PT-1").value(Parameter.TEMPERATURE) == 37.0


class TestCaseStoreOutage:

    @pytest.mark.asyncio
    async def test_failed_case_creation_is_reported(
        self, patients, measurements, responders, notifier, broadcaster, work_queue
    ):
        gcs = MagicMock()
        gcs.upload_json.side_effect = ServiceUnavailable("backend unavailable")
        scheduler = EscalationScheduler()
        service = EmergencyCaseService(
            GCSCaseStore(gcs), patients, responders, scheduler, notifier, broadcaster,
        )
        scheduler.set_processor(service.escalate)
        await scheduler.start()
        ingestor = MeasurementIngestor(
            patients=patients,
            measurements=measurements,
            trend_analyzer=TrendAnalyzer(measurements),
            aggregator=CaseAggregator(service, work_queue),
            broadcaster=broadcaster,
        )

        result = await ingestor.ingest(batch(heart_rate=30))

        assert [a.severity for a in result.alerts] == [Severity.CRITICAL]
        assert result.overall_status == OverallStatus.CRITICAL
        assert not result.case_created_or_attached
        assert result.case_id is None
        assert [(e.index, e.kind) for e in result.errors] == [(None, "storage_error")]
        assert measurements.count("PT-1") == 1
        assert measurements.latest("PT-1").is_emergency

        await scheduler.stop()


class TestTrends:

    @pytest.mark.asyncio
    async def test_trend_uses_history(self, ingestor, measurements):
        for temp in [36.8, 36.9, 37.0, 37.8, 38.2]:
            await ingestor.ingest(batch(temperature=temp, heart_rate=80))
        result = await ingestor.ingest(batch(temperature=38.6, heart_rate=80))

        assert result.trends.readings_considered >= 5
        assert measurements.latest_trend("PT-1") == result.trends
