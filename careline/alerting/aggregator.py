"""
Case Aggregator — decides whether critical evidence opens a new case or
joins the patient's open one.

All case-affecting work for a patient runs through the PatientWorkQueue,
so the lookup-then-create sequence is never interleaved with another job
for the same patient: at most one open case per patient.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field

from careline.alerting.cases import EmergencyCaseService
from careline.alerting.emergency_case import (
    AUTOMATED_ACTOR,
    CasePriority,
    CaseSeverity,
    EmergencyCase,
    Location,
    PatientCondition,
    Symptom,
    TriggerType,
)
from careline.alerting.queue import PatientWorkQueue
from careline.alerting.vitals import Alert, VitalSignsRecord

logger = logging.getLogger("alerting.aggregator")


class ClassificationResult(BaseModel):
    alerts: list[Alert] = Field(default_factory=list)
    creates_or_attaches_case: bool = False
    case_id: Optional[str] = None
    created: bool = False


class CaseAggregator:
    def __init__(self, case_service: EmergencyCaseService, queue: PatientWorkQueue) -> None:
        self._cases = case_service
        self._queue = queue

    async def classify(self, patient_id: str, record: VitalSignsRecord) -> ClassificationResult:
        """Route a record's critical alerts to a case.  Warning-only records never touch cases."""
        critical = record.critical_alerts
        if not critical:
            return ClassificationResult(alerts=list(record.alerts))

        description = "Critical vital signs detected: " + ", ".join(a.message for a in critical)
        case, created = await self._queue.submit(
            patient_id,
            lambda: self._create_or_attach(
                patient_id,
                trigger_type=TriggerType.VITAL_SIGNS,
                severity=CaseSeverity.CRITICAL,
                priority=CasePriority.IMMEDIATE,
                description=description,
                event="Critical vital signs attached",
                details=", ".join(f"{a.parameter}: {a.value}" for a in critical),
                alerts=critical,
                record_id=record.record_id,
            ),
        )
        return ClassificationResult(
            alerts=list(record.alerts),
            creates_or_attaches_case=True,
            case_id=case.case_id,
            created=created,
        )

    async def raise_case(
        self,
        patient_id: str,
        trigger_type: TriggerType,
        severity: CaseSeverity,
        priority: CasePriority,
        description: str = "",
        *,
        triggered_by: Optional[str] = None,
        location: Optional[Location] = None,
        symptoms: Optional[list[Symptom]] = None,
        patient_condition: Optional[PatientCondition] = None,
    ) -> tuple[EmergencyCase, bool]:
        """Manual, panic-button or fall trigger.  Returns (case, created)."""
        return await self._queue.submit(
            patient_id,
            lambda: self._create_or_attach(
                patient_id,
                trigger_type=trigger_type,
                severity=severity,
                priority=priority,
                description=description,
                event=f"Additional {trigger_type.value.replace('_', ' ')} trigger",
                details=description,
                triggered_by=triggered_by,
                location=location,
                symptoms=symptoms,
                patient_condition=patient_condition,
            ),
        )

    async def _create_or_attach(
        self,
        patient_id: str,
        *,
        trigger_type: TriggerType,
        severity: CaseSeverity,
        priority: CasePriority,
        description: str,
        event: str,
        details: str,
        alerts: Optional[list[Alert]] = None,
        record_id: Optional[str] = None,
        triggered_by: Optional[str] = None,
        location: Optional[Location] = None,
        symptoms: Optional[list[Symptom]] = None,
        patient_condition: Optional[PatientCondition] = None,
    ) -> tuple[EmergencyCase, bool]:
        existing = self._cases.find_open_for_patient(patient_id)
        if existing is not None:
            attached = await self._cases.attach(
                existing.case_id,
                event=event,
                details=details,
                actor=triggered_by or AUTOMATED_ACTOR,
                alerts=alerts,
                record_id=record_id,
            )
            if attached is not None:
                logger.info("Attached %s to open case %s", trigger_type.value, attached.case_id)
                return attached, False
            logger.info(
                "Case %s closed before attach — opening a new case for %s",
                existing.case_id, patient_id,
            )

        case = await self._cases.create(
            patient_id,
            trigger_type,
            severity,
            priority,
            description,
            triggered_by=triggered_by,
            location=location,
            symptoms=symptoms,
            patient_condition=patient_condition,
            alerts=alerts,
            record_id=record_id,
        )
        return case, True
