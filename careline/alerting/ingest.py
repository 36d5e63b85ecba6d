"""
Measurement Ingestor — the measurement-batch pipeline.

  validate items → persist record → evaluate thresholds → analyze trends
  → count the reading on its device → aggregate critical alerts into a
  case → broadcast

Items are validated independently: a bad item is reported in ``errors``
and dropped while the rest of the batch proceeds.  A batch with no valid
item is rejected as a whole and nothing is persisted.  A record that is
stored but cannot be routed to a case is still returned, with the
aggregation failure in ``errors``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from careline.alerting.aggregator import CaseAggregator, ClassificationResult
from careline.alerting.broadcaster import Broadcaster, patient_topic
from careline.alerting.devices import DeviceRegistry
from careline.alerting.errors import CareLineError, ValidationError
from careline.alerting.store import MeasurementStore, PatientRegistry
from careline.alerting.thresholds import evaluate, has_critical
from careline.alerting.trends import TrendAnalyzer
from careline.alerting.vitals import (
    Alert,
    Measurement,
    MeasurementInput,
    OverallStatus,
    TrendSummary,
    VitalSignsRecord,
    build_measurement,
)

logger = logging.getLogger("alerting.ingest")


class MeasurementBatch(BaseModel):
    patient_id: str
    device_id: str = ""
    timestamp: Optional[datetime] = None
    measurements: list[MeasurementInput] = Field(default_factory=list)


class ItemError(BaseModel):
    index: Optional[int] = None  # None for errors about the whole record
    parameter: str = ""
    kind: str
    message: str


class IngestResult(BaseModel):
    record_id: str
    alerts: list[Alert] = Field(default_factory=list)
    case_created_or_attached: bool = False
    case_id: Optional[str] = None
    case_created: bool = False
    overall_status: OverallStatus = OverallStatus.UNKNOWN
    trends: Optional[TrendSummary] = None
    errors: list[ItemError] = Field(default_factory=list)


class MeasurementIngestor:
    def __init__(
        self,
        patients: PatientRegistry,
        measurements: MeasurementStore,
        trend_analyzer: TrendAnalyzer,
        aggregator: CaseAggregator,
        broadcaster: Broadcaster,
        devices: DeviceRegistry | None = None,
    ) -> None:
        self._patients = patients
        self._measurements = measurements
        self._trends = trend_analyzer
        self._aggregator = aggregator
        self._broadcaster = broadcaster
        self._devices = devices

    def _validate(
        self, batch: MeasurementBatch
    ) -> tuple[list[Measurement], list[ItemError]]:
        valid: list[Measurement] = []
        errors: list[ItemError] = []
        for index, entry in enumerate(batch.measurements):
            try:
                valid.append(build_measurement(batch.patient_id, entry, batch.timestamp))
            except ValidationError as exc:
                errors.append(ItemError(
                    index=index,
                    parameter=entry.parameter,
                    kind=exc.kind,
                    message=exc.message,
                ))
        return valid, errors

    async def _classify(
        self, record: VitalSignsRecord, errors: list[ItemError]
    ) -> ClassificationResult:
        """
        Route the record to a case.  A failure here is reported in ``errors``;
        the record is already stored and its alerts are still returned.
        """
        try:
            return await self._aggregator.classify(record.patient_id, record)
        except Exception as exc:
            logger.error(
                "Case aggregation failed for record %s (patient %s, %d critical alerts): %s",
                record.record_id, record.patient_id, len(record.critical_alerts), exc,
                exc_info=True,
            )
            errors.append(ItemError(
                kind=exc.kind if isinstance(exc, CareLineError) else "internal_error",
                message=f"Case aggregation failed: {exc}",
            ))
            return ClassificationResult(alerts=list(record.alerts))

    async def ingest(self, batch: MeasurementBatch) -> IngestResult:
        self._patients.get(batch.patient_id)

        valid, errors = self._validate(batch)
        if not valid:
            logger.warning(
                "Rejected batch for %s: no valid measurements (%d errors)",
                batch.patient_id, len(errors),
            )
            raise ValidationError(
                "No valid measurements in batch",
                details=[e.model_dump() for e in errors],
            )
        if errors:
            logger.info(
                "Batch for %s: %d valid, %d rejected",
                batch.patient_id, len(valid), len(errors),
            )

        record = VitalSignsRecord(
            patient_id=batch.patient_id,
            device_id=batch.device_id,
            timestamp=max(m.timestamp for m in valid),
            measurements=valid,
        )
        values = record.values()
        record.alerts = evaluate(values)
        record.trends = self._trends.analyze(batch.patient_id, values, record.alerts)
        record.is_emergency = has_critical(record.alerts)
        self._measurements.save(record)
        if self._devices is not None and batch.device_id:
            self._devices.record_reading(batch.device_id, batch.patient_id)

        classification = await self._classify(record, errors)
        record.case_id = classification.case_id

        self._broadcaster.publish(
            patient_topic(batch.patient_id),
            "vital_signs_update",
            {
                "patient_id": batch.patient_id,
                "record_id": record.record_id,
                "values": {p.value: v for p, v in values.items()},
                "alerts": [a.model_dump() for a in record.alerts],
                "overall_status": record.trends.overall_status.value,
                "case_id": record.case_id,
            },
        )

        return IngestResult(
            record_id=record.record_id,
            alerts=record.alerts,
            case_created_or_attached=classification.creates_or_attaches_case,
            case_id=classification.case_id,
            case_created=classification.created,
            overall_status=record.trends.overall_status,
            trends=record.trends,
            errors=errors,
        )
