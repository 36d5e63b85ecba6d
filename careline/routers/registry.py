"""
Registry API — seeds the patient registry and responder directory.

Identity management lives outside this service; these endpoints only
make patients and responders known to the alerting pipeline.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from careline.alerting.responders import InMemoryResponderDirectory, Responder
from careline.alerting.store import Patient, PatientRegistry
from careline.dependencies import get_patients, get_responders

router = APIRouter(prefix="/api/registry", tags=["registry"])


@router.post("/patients", status_code=201)
async def register_patient(
    patient: Patient,
    patients: PatientRegistry = Depends(get_patients),
):
    return {"success": True, "patient": patients.register(patient).model_dump()}


@router.get("/patients")
async def list_patients(patients: PatientRegistry = Depends(get_patients)):
    return {"success": True, "patients": [p.model_dump() for p in patients.list_all()]}


@router.get("/patients/{patient_id}")
async def get_patient(patient_id: str, patients: PatientRegistry = Depends(get_patients)):
    return {"success": True, "patient": patients.get(patient_id).model_dump()}


@router.post("/responders", status_code=201)
async def register_responder(
    responder: Responder,
    responders: InMemoryResponderDirectory = Depends(get_responders),
):
    return {"success": True, "responder": responders.register(responder).model_dump()}


@router.get("/responders")
async def list_responders(responders: InMemoryResponderDirectory = Depends(get_responders)):
    return {"success": True, "responders": [r.model_dump() for r in responders.list_all()]}


@router.put("/responders/{responder_id}/availability")
async def set_availability(
    responder_id: str,
    available: bool,
    responders: InMemoryResponderDirectory = Depends(get_responders),
):
    responder = responders.set_available(responder_id, available)
    return {"success": True, "responder": responder.model_dump()}
