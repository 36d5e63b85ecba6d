"""
Emergency Case State Machine — lifecycle of one patient-safety incident.

    active ──ack──▶ acknowledged ──start_response──▶ responding
       │                 │                               │
       └────────────── resolve (resolved | false_alarm) ─┘

Each case is a single-writer resource: every mutation runs under the
case's asyncio.Lock and ends with a store save.  Escalation timers are
cancelled *after* the lock is released, because an in-flight firing may
be waiting on that same lock inside ``escalate``.

Notifications and broadcasts are fire-and-forget; their failures are
recorded by the Notifier and never roll back a transition.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from careline import settings
from careline.alerting.broadcaster import Broadcaster
from careline.alerting.emergency_case import (
    AUTOMATED_ACTOR,
    ESCALATION_ROLES,
    MAX_LEVEL,
    Acknowledgment,
    CaseMetrics,
    CasePriority,
    CaseSeverity,
    CaseStatus,
    EmergencyCase,
    EscalationRecord,
    EscalationRule,
    FamilyContact,
    HospitalTransport,
    Location,
    PatientCondition,
    Resolution,
    ResolutionOutcome,
    Symptom,
    TeamMember,
    TeamMemberStatus,
    TeamRole,
    TimelineEvent,
    TriggerType,
    default_escalation_rules,
)
from careline.alerting.errors import (
    CaseConcurrencyError,
    NotFoundError,
    SchedulingError,
    StateConflictError,
    StorageError,
)
from careline.alerting.notifier import Notifier
from careline.alerting.responders import InMemoryResponderDirectory
from careline.alerting.scheduler import EscalationScheduler
from careline.alerting.store import InMemoryCaseStore, Patient, PatientRegistry
from careline.alerting.vitals import Alert

logger = logging.getLogger("alerting.cases")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EmergencyCaseService:
    def __init__(
        self,
        case_store: InMemoryCaseStore,
        patients: PatientRegistry,
        responders: InMemoryResponderDirectory,
        scheduler: EscalationScheduler,
        notifier: Notifier,
        broadcaster: Broadcaster,
        backup_count: int = settings.BACKUP_RESPONDER_COUNT,
        rules_factory: Callable[[], list[EscalationRule]] = default_escalation_rules,
    ) -> None:
        self._store = case_store
        self._patients = patients
        self._responders = responders
        self._scheduler = scheduler
        self._notifier = notifier
        self._broadcaster = broadcaster
        self._backup_count = backup_count
        self._rules_factory = rules_factory
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, case_id: str) -> asyncio.Lock:
        lock = self._locks.get(case_id)
        if lock is None:
            lock = self._locks[case_id] = asyncio.Lock()
        return lock

    def _ensure_mutable(self, case: EmergencyCase, action: str, user_id: str) -> None:
        if case.is_terminal:
            self._locks.pop(case.case_id, None)
            logger.warning(
                "Rejected %s on %s by %s: case is %s",
                action, case.case_id, user_id, case.status.value,
            )
            raise StateConflictError(
                f"Case {case.case_id} is {case.status.value}; cannot {action}"
            )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  Creation
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def create(
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
        alerts: Optional[list[Alert]] = None,
        record_id: Optional[str] = None,
    ) -> EmergencyCase:
        """
        Open a new case, arm its escalation timers and page the response
        team.  Raises UnknownPatientError for an unregistered patient.
        """
        patient = self._patients.get(patient_id)

        case = EmergencyCase(
            patient_id=patient_id,
            triggered_by=triggered_by,
            trigger_type=trigger_type,
            severity=severity,
            priority=priority,
            description=description,
            location=location,
            symptoms=symptoms or [],
            patient_condition=patient_condition,
            alerts=list(alerts or []),
            measurement_record_ids=[record_id] if record_id else [],
        )
        case.escalation.rules = self._rules_factory()
        case.add_event(
            "Emergency case created",
            actor=triggered_by or AUTOMATED_ACTOR,
            details=f"{trigger_type.value}: {description}" if description else trigger_type.value,
        )
        if alerts:
            case.add_event(
                "Critical vital signs recorded",
                details=", ".join(f"{a.parameter}: {a.value}" for a in alerts),
            )

        async with self._lock(case.case_id):
            self._store.save(case)
            try:
                self._scheduler.arm(case.case_id, case.escalation.rules, case.created_at)
            except SchedulingError as exc:
                logger.error("Escalation arming failed for %s: %s", case.case_id, exc)
                self._fail_open(case, str(exc))
            self._initiate_response(case, patient)
            self._store.save(case)

        logger.info(
            "Created case %s for %s (%s, %s/%s)",
            case.case_id, patient_id, trigger_type.value,
            severity.value, priority.value,
        )
        self._broadcaster.publish_case("case_created", case.summary())
        return case

    def _fail_open(self, case: EmergencyCase, reason: str) -> None:
        """Escalate straight to the highest configured level and page every role."""
        levels = [r.target_level for r in case.escalation.rules] or [MAX_LEVEL]
        target = max(levels)
        previous = case.escalation.level
        case.escalation.fail_open = True
        case.escalation.level = max(previous, target)
        case.escalation.history.append(
            EscalationRecord(level=case.escalation.level, reason=f"Scheduling failed: {reason}")
        )
        case.add_event(
            f"Case escalated to level {case.escalation.level}",
            details=f"Escalation timers unavailable ({reason}); escalated immediately",
        )
        for level in range(previous + 1, case.escalation.level + 1):
            self._notify_escalation_roles(case, level)

    def _initiate_response(self, case: EmergencyCase, patient: Patient) -> None:
        candidates = self._responders.rank_available(case.patient_id)
        message = (
            f"EMERGENCY {case.case_id}: {case.severity.value} / {case.priority.value} "
            f"for patient {case.patient_id}. {case.description}"
        ).strip()

        if candidates:
            primary = candidates[0]
            case.response.assigned_to = primary.responder_id
            case.response.assigned_at = _now()
            case.response.set_primary(primary.responder_id)
            self._notifier.notify_responder(
                primary, "emergency_assignment", message,
                case_id=case.case_id, patient_id=case.patient_id,
                severity=case.severity.value,
            )
            case.add_event("Primary responder assigned", details=primary.responder_id)
        else:
            logger.warning("No available responders for case %s", case.case_id)
            case.add_event("No available responders", details="Relying on escalation")

        for backup in candidates[1: 1 + self._backup_count]:
            case.response.team.append(
                TeamMember(responder_id=backup.responder_id, role=TeamRole.BACKUP)
            )
            self._notifier.notify_responder(
                backup, "emergency_backup", message,
                case_id=case.case_id, patient_id=case.patient_id,
                severity=case.severity.value,
            )

        if patient.emergency_contacts:
            location = case.location.address if case.location and case.location.address else "Unknown"
            for contact in patient.emergency_contacts:
                self._notifier.notify_contact(
                    contact,
                    f"EMERGENCY ALERT for {patient.name or patient.patient_id}. "
                    f"Severity: {case.severity.value}. Location: {location}. "
                    f"Alert ID: {case.case_id}",
                    case_id=case.case_id,
                    patient_id=case.patient_id,
                )
                case.external_services.family_contacted.append(
                    FamilyContact(
                        name=contact.name,
                        relationship=contact.relationship,
                        phone=contact.phone,
                    )
                )
            case.add_event(
                "Emergency contacts notified",
                details=f"{len(patient.emergency_contacts)} contact(s)",
            )

        if case.severity == CaseSeverity.CRITICAL and case.priority == CasePriority.IMMEDIATE:
            self._contact_emergency_services(case)

        case.add_event(
            "Emergency response initiated",
            details=f"{len(case.response.team)} responder(s) notified",
        )

    def _contact_emergency_services(self, case: EmergencyCase) -> None:
        incident_number = f"INC-{int(_now().timestamp() * 1000)}"
        services = case.external_services.emergency_services
        services.contacted = True
        services.contacted_at = _now()
        services.incident_number = incident_number
        case.add_event("Emergency services contacted", details=f"Incident number: {incident_number}")
        logger.info("Emergency services contacted for %s (%s)", case.case_id, incident_number)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  Human actions
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def acknowledge(
        self, case_id: str, user_id: str, note: Optional[str] = None
    ) -> EmergencyCase:
        """
        Record an acknowledgment.  Every acknowledgment is kept; only the
        assigned primary responder's stops escalation.
        """
        async with self._lock(case_id):
            case = self._store.get(case_id)
            self._ensure_mutable(case, "acknowledge", user_id)

            case.response.acknowledgments.append(
                Acknowledgment(user_id=user_id, note=note)
            )
            if case.status == CaseStatus.ACTIVE:
                case.status = CaseStatus.ACKNOWLEDGED
            case.add_event("Case acknowledged", actor=user_id, details=note or "")

            by_primary = user_id == case.response.assigned_to
            if by_primary:
                case.add_event(
                    "Escalation timers cancelled",
                    details="Acknowledged by primary responder",
                )
            self._store.save(case)

        if by_primary:
            await self._scheduler.cancel_all(case_id)
        logger.info(
            "Case %s acknowledged by %s%s",
            case_id, user_id, " (primary)" if by_primary else "",
        )
        self._broadcaster.publish_case("case_acknowledged", case.summary())
        return case

    async def assign(
        self, case_id: str, responder_id: str, assigned_by: Optional[str] = None
    ) -> EmergencyCase:
        responder = self._responders.get(responder_id)
        async with self._lock(case_id):
            case = self._store.get(case_id)
            self._ensure_mutable(case, "assign", assigned_by or responder_id)
            was_stopped = self._acknowledged_by_primary(case)

            case.response.assigned_to = responder_id
            case.response.assigned_at = _now()
            case.response.set_primary(responder_id)
            case.add_event(
                "Responder assigned",
                actor=assigned_by or AUTOMATED_ACTOR,
                details=responder_id,
            )
            # an earlier acknowledgment by the new primary now stops escalation
            stops_escalation = self._acknowledged_by_primary(case) and not was_stopped
            if stops_escalation:
                case.add_event(
                    "Escalation timers cancelled",
                    details=f"{responder_id} had already acknowledged",
                )
            self._store.save(case)

        if stops_escalation:
            await self._scheduler.cancel_all(case_id)
        self._notifier.notify_responder(
            responder, "emergency_assignment",
            f"You have been assigned to emergency {case.case_id} "
            f"({case.severity.value}) for patient {case.patient_id}",
            case_id=case.case_id, patient_id=case.patient_id,
        )
        self._broadcaster.publish_case("case_assigned", case.summary())
        return case

    async def start_response(
        self,
        case_id: str,
        responder_id: str,
        estimated_arrival: Optional[datetime] = None,
    ) -> EmergencyCase:
        async with self._lock(case_id):
            case = self._store.get(case_id)
            self._ensure_mutable(case, "start response", responder_id)

            case.status = CaseStatus.RESPONDING
            if estimated_arrival is not None:
                case.response.estimated_arrival = estimated_arrival
            member = case.response.member(responder_id)
            if member is None:
                member = TeamMember(responder_id=responder_id, role=TeamRole.BACKUP)
                case.response.team.append(member)
            member.status = TeamMemberStatus.EN_ROUTE
            eta = f"ETA {estimated_arrival.isoformat()}" if estimated_arrival else ""
            case.add_event("Response started", actor=responder_id, details=eta)
            self._store.save(case)

        self._broadcaster.publish_case("case_responding", case.summary())
        return case

    async def resolve(
        self,
        case_id: str,
        user_id: str,
        outcome: ResolutionOutcome,
        *,
        follow_up_required: bool = False,
        follow_up_instructions: Optional[str] = None,
        notes: Optional[str] = None,
        hospital_transport: Optional[HospitalTransport] = None,
    ) -> EmergencyCase:
        """Close the case and compute its metrics.  Terminal cases are immutable."""
        async with self._lock(case_id):
            case = self._store.get(case_id)
            self._ensure_mutable(case, "resolve", user_id)

            now = _now()
            false_alarm = outcome == ResolutionOutcome.FALSE_ALARM
            case.resolution = Resolution(
                resolved_at=now,
                resolved_by=user_id,
                outcome=outcome,
                hospital_transport=hospital_transport,
                follow_up_required=follow_up_required,
                follow_up_instructions=follow_up_instructions,
                notes=notes,
            )
            first_ack = case.first_acknowledged_at()
            case.metrics = CaseMetrics(
                response_time_seconds=(
                    (first_ack - case.created_at).total_seconds() if first_ack else None
                ),
                resolution_time_seconds=(now - case.created_at).total_seconds(),
                escalation_count=len(case.escalation.history),
                communications_sent=self._notifier.sent_count(case_id),
                false_alarm=false_alarm,
            )
            for member in case.response.team:
                member.status = TeamMemberStatus.COMPLETED
            case.status = CaseStatus.FALSE_ALARM if false_alarm else CaseStatus.RESOLVED
            case.add_event(
                "Case marked as false alarm" if false_alarm else "Case resolved",
                actor=user_id,
                details=f"Outcome: {outcome.value}",
            )
            self._store.save(case)

        await self._scheduler.cancel_all(case_id)
        self._release(case_id)
        logger.info(
            "Case %s %s by %s (escalations=%d)",
            case_id, case.status.value, user_id, case.metrics.escalation_count,
        )
        self._broadcaster.publish_case("case_resolved", case.summary())
        return case

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  Automated transitions
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def escalate(
        self,
        case_id: str,
        level: int,
        reason: str = "Automatic escalation due to no response",
    ) -> EmergencyCase | None:
        """
        Raise the escalation level.  Called by the scheduler only.

        Dropped silently when the case is gone, terminal, or acknowledged
        by its primary responder.  If the new level cannot be saved the
        level's roles are still paged and the store error is re-raised.
        """
        async with self._lock(case_id):
            try:
                case = self._store.get(case_id)
            except NotFoundError:
                logger.warning("Escalation for unknown case %s dropped", case_id)
                self._locks.pop(case_id, None)
                return None
            if case.is_terminal:
                logger.info(
                    "Escalation of %s to level %d dropped: case is %s",
                    case_id, level, case.status.value,
                )
                self._locks.pop(case_id, None)
                return None
            if self._acknowledged_by_primary(case):
                logger.info(
                    "Escalation of %s to level %d dropped: primary acknowledged",
                    case_id, level,
                )
                return None

            case.escalation.level = max(case.escalation.level, level)
            case.escalation.history.append(EscalationRecord(level=level, reason=reason))
            case.add_event(f"Case escalated to level {case.escalation.level}", details=reason)
            try:
                self._store.save(case)
            except (StorageError, CaseConcurrencyError):
                # roles are paged even when the new level cannot be stored
                self._notify_escalation_roles(case, level)
                raise
            self._notify_escalation_roles(case, level)

        logger.warning("Case %s escalated to level %d", case_id, case.escalation.level)
        self._broadcaster.publish_case("case_escalated", case.summary())
        return case

    def _release(self, case_id: str) -> None:
        """Forget per-case runtime state once a case is closed and its timers are gone."""
        self._locks.pop(case_id, None)
        self._notifier.close_case(case_id)

    def _acknowledged_by_primary(self, case: EmergencyCase) -> bool:
        primary = case.response.assigned_to
        return primary is not None and any(
            a.user_id == primary for a in case.response.acknowledgments
        )

    def _notify_escalation_roles(self, case: EmergencyCase, level: int) -> None:
        message = (
            f"ESCALATION level {level}: emergency {case.case_id} for patient "
            f"{case.patient_id} ({case.severity.value}) has not been handled"
        )
        for role in ESCALATION_ROLES.get(level, []):
            self._notifier.notify_role(
                role, "escalation", message,
                case_id=case.case_id, patient_id=case.patient_id, level=level,
            )

    async def attach(
        self,
        case_id: str,
        *,
        event: str,
        details: str = "",
        actor: str = AUTOMATED_ACTOR,
        alerts: Optional[list[Alert]] = None,
        record_id: Optional[str] = None,
    ) -> EmergencyCase | None:
        """
        Attach new evidence to an open case without changing its status.
        Returns None if the case is no longer open.
        """
        async with self._lock(case_id):
            case = self._store.get(case_id)
            if not case.is_open:
                return None
            if alerts:
                case.alerts.extend(alerts)
            if record_id:
                case.measurement_record_ids.append(record_id)
            case.add_event(event, actor=actor, details=details)
            self._store.save(case)

        self._broadcaster.publish_case("case_updated", case.summary())
        return case

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    #  Queries
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def get(self, case_id: str) -> EmergencyCase:
        return self._store.get(case_id)

    def find_open_for_patient(self, patient_id: str) -> EmergencyCase | None:
        return self._store.find_open_for_patient(patient_id)

    def list_active(
        self,
        severity: Optional[CaseSeverity] = None,
        priority: Optional[CasePriority] = None,
        assigned_to: Optional[str] = None,
    ) -> list[EmergencyCase]:
        return self._store.list_active(severity, priority, assigned_to)

    def list_for_patient(self, patient_id: str, limit: int = 20) -> list[EmergencyCase]:
        return self._store.list_for_patient(patient_id, limit)

    def timeline(self, case_id: str) -> list[TimelineEvent]:
        return sorted(self._store.get(case_id).timeline, key=lambda e: e.sequence)

    def communications(self, case_id: str):
        self._store.get(case_id)
        return self._notifier.communications(case_id)
