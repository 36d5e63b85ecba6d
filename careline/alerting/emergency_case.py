"""
Emergency Case — the aggregate record of one patient-safety incident.

One structured document per case, from trigger to resolution.  The
timeline is append-only and ordered by a per-case sequence number;
wall-clock timestamps are informational.  Terminal cases (resolved or
false alarm) are read-only.
"""

from __future__ import annotations

import random
import string
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from careline import settings
from careline.alerting.vitals import Alert


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TriggerType(str, Enum):
    MANUAL = "manual"
    VITAL_SIGNS = "vital_signs"
    FALL_DETECTION = "fall_detection"
    PANIC_BUTTON = "panic_button"
    DEVICE_MALFUNCTION = "device_malfunction"
    MEDICATION_MISSED = "medication_missed"
    GEOFENCE_BREACH = "geofence_breach"
    NO_RESPONSE = "no_response"


class CaseSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CasePriority(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENT = "emergent"
    IMMEDIATE = "immediate"


class CaseStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESPONDING = "responding"
    RESOLVED = "resolved"
    FALSE_ALARM = "false_alarm"


OPEN_STATUSES = {CaseStatus.ACTIVE, CaseStatus.ACKNOWLEDGED, CaseStatus.RESPONDING}
TERMINAL_STATUSES = {CaseStatus.RESOLVED, CaseStatus.FALSE_ALARM}


class ResolutionOutcome(str, Enum):
    PATIENT_STABLE = "patient_stable"
    TRANSPORTED_HOSPITAL = "transported_hospital"
    TREATED_ON_SCENE = "treated_on_scene"
    FALSE_ALARM = "false_alarm"
    PATIENT_REFUSED_CARE = "patient_refused_care"
    RESOLVED_REMOTELY = "resolved_remotely"


class TeamRole(str, Enum):
    PRIMARY = "primary_responder"
    BACKUP = "backup_responder"


class TeamMemberStatus(str, Enum):
    NOTIFIED = "notified"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    COMPLETED = "completed"


AUTOMATED_ACTOR = "automated"
MIN_LEVEL = 1
MAX_LEVEL = 5

# Who gets contacted when a case reaches each escalation level
ESCALATION_ROLES: dict[int, list[str]] = {
    2: ["supervisor", "senior_nurse"],
    3: ["department_head", "emergency_coordinator"],
    4: ["medical_director", "hospital_administrator"],
    5: ["executive_on_call", "external_emergency_services"],
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_case_id() -> str:
    """EMRG-<epoch ms>-<4 random chars>."""
    millis = int(_now().timestamp() * 1000)
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"EMRG-{millis}-{suffix}"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Sub-models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class EscalationRule(BaseModel):
    offset_seconds: float
    target_level: int

    @property
    def offset(self) -> timedelta:
        return timedelta(seconds=self.offset_seconds)

    @classmethod
    def minutes(cls, minutes: float, level: int) -> EscalationRule:
        return cls(offset_seconds=minutes * 60, target_level=level)


def default_escalation_rules() -> list[EscalationRule]:
    return [
        EscalationRule.minutes(offset, level)
        for offset, level in zip(
            settings.ESCALATION_OFFSETS_MINUTES, settings.ESCALATION_TARGET_LEVELS
        )
    ]


class Location(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    accuracy: Optional[float] = None
    source: str = "gps"  # gps, network, manual, device


class Symptom(BaseModel):
    symptom: str
    severity: Optional[str] = None  # mild, moderate, severe
    duration: Optional[str] = None
    onset: Optional[datetime] = None


class PatientCondition(BaseModel):
    consciousness: Optional[str] = None  # alert, drowsy, confused, unconscious, unknown
    breathing: Optional[str] = None  # normal, labored, shallow, absent, unknown
    mobility: Optional[str] = None
    pain_level: Optional[int] = Field(default=None, ge=0, le=10)
    pain_location: Optional[str] = None


class TimelineEvent(BaseModel):
    sequence: int
    timestamp: datetime = Field(default_factory=_now)
    actor: str = AUTOMATED_ACTOR
    event: str
    details: str = ""

    @property
    def automated(self) -> bool:
        return self.actor == AUTOMATED_ACTOR


class Acknowledgment(BaseModel):
    user_id: str
    acknowledged_at: datetime = Field(default_factory=_now)
    note: Optional[str] = None


class TeamMember(BaseModel):
    responder_id: str
    role: TeamRole
    status: TeamMemberStatus = TeamMemberStatus.NOTIFIED


class ResponseSection(BaseModel):
    acknowledgments: list[Acknowledgment] = Field(default_factory=list)
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    estimated_arrival: Optional[datetime] = None
    team: list[TeamMember] = Field(default_factory=list)

    def member(self, responder_id: str) -> TeamMember | None:
        for m in self.team:
            if m.responder_id == responder_id:
                return m
        return None

    def set_primary(self, responder_id: str) -> None:
        """Make ``responder_id`` the only primary; earlier primaries become backups."""
        for m in self.team:
            if m.role == TeamRole.PRIMARY and m.responder_id != responder_id:
                m.role = TeamRole.BACKUP
        existing = self.member(responder_id)
        if existing:
            existing.role = TeamRole.PRIMARY
        else:
            self.team.append(TeamMember(responder_id=responder_id, role=TeamRole.PRIMARY))


class EscalationRecord(BaseModel):
    level: int
    escalated_at: datetime = Field(default_factory=_now)
    reason: str = ""


class EscalationSection(BaseModel):
    level: int = Field(default=MIN_LEVEL, ge=MIN_LEVEL, le=MAX_LEVEL)
    rules: list[EscalationRule] = Field(default_factory=list)
    history: list[EscalationRecord] = Field(default_factory=list)
    fail_open: bool = False


class EmergencyServicesContact(BaseModel):
    contacted: bool = False
    contacted_at: Optional[datetime] = None
    incident_number: Optional[str] = None


class FamilyContact(BaseModel):
    name: str
    relationship: str = ""
    phone: str = ""
    notified_at: datetime = Field(default_factory=_now)


class ExternalServices(BaseModel):
    emergency_services: EmergencyServicesContact = Field(
        default_factory=EmergencyServicesContact
    )
    family_contacted: list[FamilyContact] = Field(default_factory=list)


class HospitalTransport(BaseModel):
    required: bool = False
    hospital: Optional[str] = None
    ambulance_id: Optional[str] = None


class Resolution(BaseModel):
    resolved_at: datetime = Field(default_factory=_now)
    resolved_by: str
    outcome: ResolutionOutcome
    hospital_transport: Optional[HospitalTransport] = None
    follow_up_required: bool = False
    follow_up_instructions: Optional[str] = None
    notes: Optional[str] = None


class CaseMetrics(BaseModel):
    response_time_seconds: Optional[float] = None
    resolution_time_seconds: Optional[float] = None
    escalation_count: int = 0
    communications_sent: int = 0
    false_alarm: bool = False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Top-level Case Model
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class EmergencyCase(BaseModel):
    case_id: str = Field(default_factory=new_case_id)
    patient_id: str
    triggered_by: Optional[str] = None
    trigger_type: TriggerType
    severity: CaseSeverity
    priority: CasePriority
    status: CaseStatus = CaseStatus.ACTIVE
    description: str = Field(default="", max_length=1000)
    location: Optional[Location] = None
    symptoms: list[Symptom] = Field(default_factory=list)
    patient_condition: Optional[PatientCondition] = None
    alerts: list[Alert] = Field(default_factory=list)
    measurement_record_ids: list[str] = Field(default_factory=list)
    response: ResponseSection = Field(default_factory=ResponseSection)
    escalation: EscalationSection = Field(default_factory=EscalationSection)
    external_services: ExternalServices = Field(default_factory=ExternalServices)
    resolution: Optional[Resolution] = None
    metrics: Optional[CaseMetrics] = None
    timeline: list[TimelineEvent] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def level(self) -> int:
        return self.escalation.level

    @property
    def next_sequence(self) -> int:
        return self.timeline[-1].sequence + 1 if self.timeline else 1

    def add_event(
        self, event: str, *, actor: str = AUTOMATED_ACTOR, details: str = ""
    ) -> TimelineEvent:
        """Append a timeline event stamped with the next sequence number."""
        entry = TimelineEvent(
            sequence=self.next_sequence,
            actor=actor,
            event=event,
            details=details,
        )
        self.timeline.append(entry)
        self.touch()
        return entry

    def touch(self) -> None:
        self.updated_at = _now()

    def first_acknowledged_at(self) -> datetime | None:
        acks = self.response.acknowledgments
        return acks[0].acknowledged_at if acks else None

    def summary(self) -> dict[str, Any]:
        """Compact view used for broadcasts."""
        return {
            "case_id": self.case_id,
            "patient_id": self.patient_id,
            "status": self.status.value,
            "severity": self.severity.value,
            "priority": self.priority.value,
            "level": self.escalation.level,
            "assigned_to": self.response.assigned_to,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
