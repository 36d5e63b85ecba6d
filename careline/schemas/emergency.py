from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from careline.alerting.emergency_case import (
    CasePriority,
    CaseSeverity,
    HospitalTransport,
    Location,
    PatientCondition,
    ResolutionOutcome,
    Symptom,
    TriggerType,
)


class ManualCaseRequest(BaseModel):
    patient_id: str
    triggered_by: Optional[str] = None
    trigger_type: TriggerType = TriggerType.MANUAL
    severity: CaseSeverity
    priority: CasePriority
    description: str = Field(default="", max_length=1000)
    location: Optional[Location] = None
    symptoms: list[Symptom] = Field(default_factory=list)
    patient_condition: Optional[PatientCondition] = None


class PanicButtonRequest(BaseModel):
    patient_id: str
    triggered_by: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    location: Optional[Location] = None


class FallDetectionRequest(BaseModel):
    patient_id: str
    device_id: str
    confidence: float = Field(ge=0, le=1)
    impact_force: Optional[float] = None
    location: Optional[Location] = None


class AcknowledgeRequest(BaseModel):
    user_id: str
    note: Optional[str] = None


class AssignRequest(BaseModel):
    responder_id: str
    assigned_by: Optional[str] = None


class StartResponseRequest(BaseModel):
    responder_id: str
    estimated_arrival: Optional[datetime] = None


class ResolveRequest(BaseModel):
    user_id: str
    outcome: ResolutionOutcome
    follow_up_required: bool = False
    follow_up_instructions: Optional[str] = None
    notes: Optional[str] = None
    hospital_transport: Optional[HospitalTransport] = None
