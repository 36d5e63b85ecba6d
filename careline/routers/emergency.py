"""
Emergency API — case triggers, lifecycle actions and case views.

Endpoints:
  POST /api/emergency/cases                      Raise a case manually
  POST /api/emergency/panic-button               Patient panic button
  POST /api/emergency/fall-detection             Device fall report
  GET  /api/emergency/cases/active               Open cases (filters: severity, priority, assigned_to)
  GET  /api/emergency/cases/{id}                 Case + communications
  GET  /api/emergency/cases/{id}/timeline        Ordered timeline
  POST /api/emergency/cases/{id}/acknowledge     Acknowledge
  POST /api/emergency/cases/{id}/assign          Assign a responder
  POST /api/emergency/cases/{id}/respond         Responder en route
  POST /api/emergency/cases/{id}/resolve         Resolve or mark false alarm
  GET  /api/emergency/patients/{id}/cases        Case history for a patient
  GET  /api/emergency/status                     Scheduler / queue / channel status
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from careline.alerting.aggregator import CaseAggregator
from careline.alerting.cases import EmergencyCaseService
from careline.alerting.emergency_case import (
    CasePriority,
    CaseSeverity,
    EmergencyCase,
    TriggerType,
)
from careline.alerting.store import PatientRegistry
from careline.dependencies import get_aggregator, get_case_service, get_patients
from careline.schemas.emergency import (
    AcknowledgeRequest,
    AssignRequest,
    FallDetectionRequest,
    ManualCaseRequest,
    PanicButtonRequest,
    ResolveRequest,
    StartResponseRequest,
)

logger = logging.getLogger("careline.api.emergency")

router = APIRouter(prefix="/api/emergency", tags=["emergency"])

FALL_CONFIDENCE_CRITICAL = 0.8


def _case_response(case: EmergencyCase, created: bool | None = None) -> dict:
    body = {"success": True, "case": case.model_dump(mode="json")}
    if created is not None:
        body["created"] = created
    return body


# ── Triggers ──


@router.post("/cases", status_code=201)
async def raise_case(
    request: ManualCaseRequest,
    aggregator: CaseAggregator = Depends(get_aggregator),
):
    case, created = await aggregator.raise_case(
        request.patient_id,
        request.trigger_type,
        request.severity,
        request.priority,
        request.description,
        triggered_by=request.triggered_by,
        location=request.location,
        symptoms=request.symptoms,
        patient_condition=request.patient_condition,
    )
    return _case_response(case, created)


@router.post("/panic-button", status_code=201)
async def panic_button(
    request: PanicButtonRequest,
    aggregator: CaseAggregator = Depends(get_aggregator),
):
    logger.warning("Panic button activated for patient %s", request.patient_id)
    case, created = await aggregator.raise_case(
        request.patient_id,
        TriggerType.PANIC_BUTTON,
        CaseSeverity.CRITICAL,
        CasePriority.IMMEDIATE,
        request.description or "Emergency panic button activated",
        triggered_by=request.triggered_by or request.patient_id,
        location=request.location,
    )
    return _case_response(case, created)


@router.post("/fall-detection", status_code=201)
async def fall_detection(
    request: FallDetectionRequest,
    aggregator: CaseAggregator = Depends(get_aggregator),
):
    confident = request.confidence > FALL_CONFIDENCE_CRITICAL
    description = (
        f"Fall detected by device {request.device_id}. "
        f"Confidence: {request.confidence * 100:.1f}%"
    )
    if request.impact_force is not None:
        description += f", Impact: {request.impact_force:g}G"

    case, created = await aggregator.raise_case(
        request.patient_id,
        TriggerType.FALL_DETECTION,
        CaseSeverity.CRITICAL if confident else CaseSeverity.HIGH,
        CasePriority.IMMEDIATE if confident else CasePriority.URGENT,
        description,
        triggered_by=request.device_id,
        location=request.location,
    )
    return _case_response(case, created)


# ── Views ──


@router.get("/cases/active")
async def active_cases(
    severity: Optional[CaseSeverity] = None,
    priority: Optional[CasePriority] = None,
    assigned_to: Optional[str] = None,
    cases: EmergencyCaseService = Depends(get_case_service),
):
    active = cases.list_active(severity=severity, priority=priority, assigned_to=assigned_to)
    return {
        "success": True,
        "count": len(active),
        "cases": [c.model_dump(mode="json") for c in active],
    }


@router.get("/cases/{case_id}")
async def get_case(case_id: str, cases: EmergencyCaseService = Depends(get_case_service)):
    case = cases.get(case_id)
    body = _case_response(case)
    body["communications"] = [
        c.model_dump(mode="json") for c in cases.communications(case_id)
    ]
    return body


@router.get("/cases/{case_id}/timeline")
async def case_timeline(case_id: str, cases: EmergencyCaseService = Depends(get_case_service)):
    events = cases.timeline(case_id)
    return {
        "success": True,
        "case_id": case_id,
        "timeline": [e.model_dump(mode="json") for e in events],
    }


@router.get("/patients/{patient_id}/cases")
async def patient_cases(
    patient_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    cases: EmergencyCaseService = Depends(get_case_service),
    patients: PatientRegistry = Depends(get_patients),
):
    patients.get(patient_id)
    history = cases.list_for_patient(patient_id, limit=limit)
    return {
        "success": True,
        "patient_id": patient_id,
        "count": len(history),
        "cases": [c.model_dump(mode="json") for c in history],
    }


# ── Lifecycle ──


@router.post("/cases/{case_id}/acknowledge")
async def acknowledge_case(
    case_id: str,
    request: AcknowledgeRequest,
    cases: EmergencyCaseService = Depends(get_case_service),
):
    case = await cases.acknowledge(case_id, request.user_id, request.note)
    return _case_response(case)


@router.post("/cases/{case_id}/assign")
async def assign_case(
    case_id: str,
    request: AssignRequest,
    cases: EmergencyCaseService = Depends(get_case_service),
):
    case = await cases.assign(case_id, request.responder_id, request.assigned_by)
    return _case_response(case)


@router.post("/cases/{case_id}/respond")
async def start_response(
    case_id: str,
    request: StartResponseRequest,
    cases: EmergencyCaseService = Depends(get_case_service),
):
    case = await cases.start_response(case_id, request.responder_id, request.estimated_arrival)
    return _case_response(case)


@router.post("/cases/{case_id}/resolve")
async def resolve_case(
    case_id: str,
    request: ResolveRequest,
    cases: EmergencyCaseService = Depends(get_case_service),
):
    case = await cases.resolve(
        case_id,
        request.user_id,
        request.outcome,
        follow_up_required=request.follow_up_required,
        follow_up_instructions=request.follow_up_instructions,
        notes=request.notes,
        hospital_transport=request.hospital_transport,
    )
    return _case_response(case)


# ── Status ──


@router.get("/status")
async def alerting_status():
    from careline.alerting.setup import (
        get_broadcaster,
        get_dispatcher_registry,
        get_notifier,
        get_queue,
        get_scheduler,
    )

    scheduler = get_scheduler()
    queue = get_queue()
    registry = get_dispatcher_registry()
    broadcaster = get_broadcaster()
    notifier = get_notifier()
    return {
        "status": "ok" if scheduler and scheduler.running else "degraded",
        "scheduler": scheduler.get_status() if scheduler else None,
        "active_queues": queue.active_count if queue else 0,
        "registered_channels": registry.registered_channels if registry else [],
        "notifications_in_flight": notifier.pending_count if notifier else 0,
        "broadcaster": broadcaster.get_status() if broadcaster else None,
    }
