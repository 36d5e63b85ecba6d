"""
Notifier — fire-and-forget delivery with a recorded ledger.

Every notification becomes a ``Communication`` recorded against its case
before delivery starts.  Delivery runs as a background task through the
DispatcherRegistry (which owns retries) and updates the Communication's
status when it finishes.  Nothing here raises into the case lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict, defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from careline import settings
from careline.alerting.channels import DispatcherRegistry, NotificationRequest
from careline.alerting.responders import InMemoryResponderDirectory, Responder
from careline.alerting.store import EmergencyContact

logger = logging.getLogger("alerting.notifier")


class CommunicationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Communication(BaseModel):
    communication_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    case_id: Optional[str] = None
    recipient: str
    channel: str
    notification_type: str
    message: str = ""
    status: CommunicationStatus = CommunicationStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None


class Notifier:
    def __init__(
        self,
        registry: DispatcherRegistry,
        directory: InMemoryResponderDirectory | None = None,
        default_channel: str = settings.NOTIFICATION_DEFAULT_CHANNEL,
        closed_ledger_limit: int = settings.CLOSED_CASE_LEDGER_LIMIT,
        closed_retention: int = settings.CLOSED_CASE_RETENTION,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._default_channel = default_channel
        self._ledger: dict[str, list[Communication]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()
        self._closed_ledger_limit = closed_ledger_limit
        self._closed_retention = closed_retention
        self._closed: OrderedDict[str, None] = OrderedDict()

    # ── Core ──

    def notify(self, request: NotificationRequest) -> Communication:
        """Record a Communication and start delivering it in the background."""
        comm = Communication(
            case_id=request.case_id,
            recipient=request.recipient,
            channel=request.channel,
            notification_type=request.notification_type,
            message=request.message,
        )
        self._ledger[request.case_id or ""].append(comm)
        task = asyncio.create_task(self._deliver(comm, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return comm

    async def _deliver(self, comm: Communication, request: NotificationRequest) -> None:
        try:
            result = await self._registry.dispatch(request)
            comm.attempts = result.attempts
            comm.error = result.error
            comm.status = (
                CommunicationStatus.SENT if result.success else CommunicationStatus.FAILED
            )
        except Exception as exc:
            comm.status = CommunicationStatus.FAILED
            comm.error = str(exc)
            logger.error(
                "Notification %s to %s failed: %s",
                comm.notification_type, comm.recipient, exc, exc_info=True,
            )
        finally:
            comm.completed_at = datetime.now(timezone.utc)

        if comm.status == CommunicationStatus.FAILED:
            logger.warning(
                "Undelivered %s to %s on %s (case %s): %s",
                comm.notification_type, comm.recipient, comm.channel,
                comm.case_id, comm.error,
            )

    # ── Recipients ──

    def _responder_channels(self, responder: Responder) -> list[str]:
        channels = [self._default_channel]
        registered = self._registry.registered_channels
        for channel in ("sms", "email"):
            if channel in responder.channels and channel in registered and channel != self._default_channel:
                channels.append(channel)
        return channels

    def notify_responder(
        self,
        responder: Responder,
        notification_type: str,
        message: str,
        case_id: str | None = None,
        patient_id: str | None = None,
        **metadata,
    ) -> list[Communication]:
        comms = []
        for channel in self._responder_channels(responder):
            extra = dict(metadata)
            if channel == "sms":
                extra["phone"] = responder.phone
            elif channel == "email":
                extra["to"] = responder.email
            comms.append(self.notify(NotificationRequest(
                recipient=responder.responder_id,
                channel=channel,
                notification_type=notification_type,
                message=message,
                case_id=case_id,
                patient_id=patient_id,
                metadata=extra,
            )))
        return comms

    def notify_role(
        self,
        role: str,
        notification_type: str,
        message: str,
        case_id: str | None = None,
        patient_id: str | None = None,
        **metadata,
    ) -> list[Communication]:
        """Page the role's topic and every registered responder holding it."""
        comms = [self.notify(NotificationRequest(
            recipient=f"role:{role}",
            channel=self._default_channel,
            notification_type=notification_type,
            message=message,
            case_id=case_id,
            patient_id=patient_id,
            metadata={"role": role, **metadata},
        ))]
        if self._directory is not None:
            for responder in self._directory.find_by_role(role):
                comms.extend(self.notify_responder(
                    responder, notification_type, message,
                    case_id=case_id, patient_id=patient_id, role=role, **metadata,
                ))
        return comms

    def notify_contact(
        self,
        contact: EmergencyContact,
        message: str,
        case_id: str | None = None,
        patient_id: str | None = None,
    ) -> Communication:
        channel = "sms" if contact.phone and "sms" in self._registry.registered_channels else self._default_channel
        return self.notify(NotificationRequest(
            recipient=f"contact:{contact.phone or contact.name}",
            channel=channel,
            notification_type="emergency_contact",
            message=message,
            case_id=case_id,
            patient_id=patient_id,
            metadata={"phone": contact.phone, "name": contact.name},
        ))

    # ── Ledger ──

    def communications(self, case_id: str) -> list[Communication]:
        return list(self._ledger.get(case_id, []))

    def sent_count(self, case_id: str) -> int:
        """Communications issued for a case, whatever their delivery outcome."""
        return len(self._ledger.get(case_id, []))

    def close_case(self, case_id: str) -> None:
        """
        Trim a closed case's ledger to its newest entries.  Once more than
        ``closed_retention`` cases are closed the oldest ledger is dropped.
        """
        ledger = self._ledger.get(case_id)
        if ledger is not None and len(ledger) > self._closed_ledger_limit:
            del ledger[: len(ledger) - self._closed_ledger_limit]
        self._closed[case_id] = None
        self._closed.move_to_end(case_id)
        while len(self._closed) > self._closed_retention:
            forgotten, _ = self._closed.popitem(last=False)
            self._ledger.pop(forgotten, None)
            logger.debug("Dropped communication ledger for %s", forgotten)

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight deliveries to finish."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d notifications still in flight after drain", len(pending))
