"""
Monitoring API — measurement ingestion and patient vital-sign views.

Endpoints:
  POST /api/monitoring/measurements                   Submit a measurement batch
  GET  /api/monitoring/patients/{id}/measurements     Measurement history
  GET  /api/monitoring/patients/{id}/dashboard        Latest vitals, trend, alerts, devices, open cases
  POST /api/monitoring/devices                        Register a monitoring device
  PUT  /api/monitoring/devices/{id}/status            Update device status and connectivity
  GET  /api/monitoring/patients/{id}/devices          Devices assigned to a patient
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from careline.alerting.cases import EmergencyCaseService
from careline.alerting.devices import Device, DeviceRegistry, DeviceStatusUpdate
from careline.alerting.ingest import IngestResult, MeasurementBatch, MeasurementIngestor
from careline.alerting.store import MeasurementStore, PatientRegistry
from careline.alerting.vitals import parse_parameter
from careline.dependencies import (
    get_case_service,
    get_devices,
    get_ingestor,
    get_measurements,
    get_patients,
)

logger = logging.getLogger("careline.api.monitoring")

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])

RECENT_ALERT_LIMIT = 20


@router.post("/measurements", response_model=IngestResult)
async def submit_measurements(
    batch: MeasurementBatch,
    ingestor: MeasurementIngestor = Depends(get_ingestor),
):
    """
    Validate, store and evaluate one batch.  Invalid items are reported in
    ``errors``; critical alerts open or join the patient's emergency case.
    """
    return await ingestor.ingest(batch)


@router.get("/patients/{patient_id}/measurements")
async def measurement_history(
    patient_id: str,
    parameter: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    patients: PatientRegistry = Depends(get_patients),
    measurements: MeasurementStore = Depends(get_measurements),
):
    patients.get(patient_id)
    param = parse_parameter(parameter) if parameter else None
    records = measurements.history(patient_id, parameter=param, limit=limit)
    return {
        "success": True,
        "patient_id": patient_id,
        "count": len(records),
        "records": [r.model_dump(mode="json") for r in records],
    }


@router.get("/patients/{patient_id}/dashboard")
async def patient_dashboard(
    patient_id: str,
    patients: PatientRegistry = Depends(get_patients),
    measurements: MeasurementStore = Depends(get_measurements),
    cases: EmergencyCaseService = Depends(get_case_service),
    devices: DeviceRegistry = Depends(get_devices),
):
    patient = patients.get(patient_id)

    since = datetime.now(timezone.utc) - timedelta(hours=24)
    day = measurements.recent(patient_id, since=since)
    latest = measurements.latest(patient_id)
    trend = measurements.latest_trend(patient_id)

    recent_alerts = [
        {**a.model_dump(mode="json"), "record_id": r.record_id, "timestamp": r.timestamp.isoformat()}
        for r in day for a in r.alerts
    ][:RECENT_ALERT_LIMIT]

    open_case = cases.find_open_for_patient(patient_id)

    return {
        "success": True,
        "patient": patient.model_dump(mode="json"),
        "latest_vitals": (
            {
                "record_id": latest.record_id,
                "timestamp": latest.timestamp.isoformat(),
                "values": {p.value: v for p, v in latest.values().items()},
            }
            if latest else None
        ),
        "trends": trend.model_dump(mode="json") if trend else None,
        "recent_alerts": recent_alerts,
        "devices": [d.model_dump(mode="json") for d in devices.list_for_patient(patient_id)],
        "open_cases": [open_case.summary()] if open_case else [],
        "summary": {
            "readings_24h": len(day),
            "alerts_24h": sum(len(r.alerts) for r in day),
            "critical_alerts_24h": sum(len(r.critical_alerts) for r in day),
            "emergencies_24h": sum(1 for r in day if r.is_emergency),
        },
    }


# ── Devices ──


@router.post("/devices", status_code=201)
async def register_device(
    device: Device,
    devices: DeviceRegistry = Depends(get_devices),
):
    devices.register(device)
    return {"success": True, "device": device.model_dump(mode="json")}


@router.put("/devices/{device_id}/status")
async def update_device_status(
    device_id: str,
    update: DeviceStatusUpdate,
    devices: DeviceRegistry = Depends(get_devices),
):
    device = devices.update_status(device_id, update)
    return {"success": True, "device": device.model_dump(mode="json")}


@router.get("/patients/{patient_id}/devices")
async def patient_devices(
    patient_id: str,
    patients: PatientRegistry = Depends(get_patients),
    devices: DeviceRegistry = Depends(get_devices),
):
    patients.get(patient_id)
    found = devices.list_for_patient(patient_id)
    return {
        "success": True,
        "patient_id": patient_id,
        "count": len(found),
        "devices": [d.model_dump(mode="json") for d in found],
    }
