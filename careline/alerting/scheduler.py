"""
Escalation Scheduler — in-process asyncio timers per (case, level).

Each armed pair owns a claim flag.  The timer claims it (pending → fired)
before calling the processor; ``cancel_all`` claims every pending pair
(pending → cancelled).  Whoever claims first wins, so a pair fires at most
once and a cancelled pair never fires.  Firings already claimed are
awaited by ``cancel_all`` so callers know no escalation is still running.

The processor re-enters the case state machine through ``escalate`` only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from careline.alerting.emergency_case import EscalationRule
from careline.alerting.errors import SchedulingError

logger = logging.getLogger("alerting.scheduler")

EscalationProcessor = Callable[[str, int], Awaitable[Any]]


class ClaimState(str, Enum):
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


@dataclass
class ArmedEscalation:
    case_id: str
    level: int
    fire_at: datetime
    state: ClaimState = ClaimState.PENDING
    task: asyncio.Task | None = None
    finished: asyncio.Event = field(default_factory=asyncio.Event)

    def claim(self, state: ClaimState) -> bool:
        if self.state != ClaimState.PENDING:
            return False
        self.state = state
        return True


class EscalationScheduler:
    """
    Usage:
        scheduler = EscalationScheduler()
        scheduler.set_processor(case_service.escalate)
        await scheduler.start()
        scheduler.arm(case.case_id, case.escalation.rules, case.created_at)
    """

    def __init__(self, processor: EscalationProcessor | None = None) -> None:
        self._processor = processor
        self._armed: dict[str, dict[int, ArmedEscalation]] = {}
        self._running = False
        self._fired = 0
        self._cancelled = 0

    def set_processor(self, processor: EscalationProcessor) -> None:
        self._processor = processor

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("EscalationScheduler already running")
            return
        if self._processor is None:
            raise SchedulingError("EscalationScheduler has no processor")
        self._running = True
        logger.info("EscalationScheduler started")

    async def stop(self) -> None:
        self._running = False
        for case_id in list(self._armed.keys()):
            for entry in self._armed[case_id].values():
                if entry.claim(ClaimState.CANCELLED) and entry.task:
                    entry.task.cancel()
        tasks = [
            e.task for entries in self._armed.values() for e in entries.values()
            if e.task and not e.task.done()
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._armed.clear()
        logger.info("EscalationScheduler stopped")

    # ── Arming ──

    def arm(
        self,
        case_id: str,
        rules: Iterable[EscalationRule],
        creation_time: datetime,
    ) -> list[ArmedEscalation]:
        """
        Arm one timer per rule, firing at ``creation_time + offset``.

        Raises SchedulingError if the scheduler is not running or a timer
        cannot be created; nothing stays armed for the case in that case.
        """
        if not self._running:
            raise SchedulingError(f"Scheduler not running; cannot arm {case_id}")

        now = datetime.now(timezone.utc)
        entries = self._armed.setdefault(case_id, {})
        armed: list[ArmedEscalation] = []
        try:
            for rule in rules:
                if rule.target_level in entries:
                    continue
                fire_at = creation_time + rule.offset
                entry = ArmedEscalation(case_id=case_id, level=rule.target_level, fire_at=fire_at)
                delay = max(0.0, (fire_at - now).total_seconds())
                entry.task = asyncio.create_task(self._fire_after(entry, delay))
                entries[rule.target_level] = entry
                armed.append(entry)
        except Exception as exc:
            for entry in armed:
                entry.claim(ClaimState.CANCELLED)
                if entry.task:
                    entry.task.cancel()
            self._armed.pop(case_id, None)
            raise SchedulingError(f"Failed to arm escalation for {case_id}: {exc}") from exc

        logger.info(
            "Armed %d escalation timers for %s (levels %s)",
            len(armed), case_id, [e.level for e in armed],
        )
        return armed

    async def _fire_after(self, entry: ArmedEscalation, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            entry.finished.set()
            return

        if not entry.claim(ClaimState.FIRED):
            entry.finished.set()
            return

        self._fired += 1
        logger.info("Escalation timer fired: %s → level %d", entry.case_id, entry.level)
        try:
            await self._processor(entry.case_id, entry.level)
        except Exception as exc:
            logger.error(
                "Escalation of %s to level %d failed: %s",
                entry.case_id, entry.level, exc, exc_info=True,
            )
        finally:
            entry.finished.set()

    # ── Cancellation ──

    async def cancel_all(self, case_id: str) -> int:
        """
        Cancel every pending timer for a case and wait for in-flight
        firings.  Idempotent.  Returns the number of timers cancelled.
        """
        entries = self._armed.pop(case_id, {})
        cancelled = 0
        in_flight = []
        current = asyncio.current_task()
        for entry in entries.values():
            if entry.claim(ClaimState.CANCELLED):
                cancelled += 1
                if entry.task:
                    entry.task.cancel()
            elif entry.state == ClaimState.FIRED and not entry.finished.is_set():
                if entry.task is not current:
                    in_flight.append(entry.finished.wait())

        if in_flight:
            await asyncio.gather(*in_flight)

        self._cancelled += cancelled
        if cancelled:
            logger.info("Cancelled %d escalation timers for %s", cancelled, case_id)
        return cancelled

    # ── Introspection ──

    def pending_levels(self, case_id: str) -> list[int]:
        return sorted(
            level for level, e in self._armed.get(case_id, {}).items()
            if e.state == ClaimState.PENDING
        )

    def next_fire_at(self, case_id: str) -> datetime | None:
        pending = [
            e.fire_at for e in self._armed.get(case_id, {}).values()
            if e.state == ClaimState.PENDING
        ]
        return min(pending) if pending else None

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "cases_armed": len(self._armed),
            "pending_timers": sum(
                1 for entries in self._armed.values()
                for e in entries.values() if e.state == ClaimState.PENDING
            ),
            "fired": self._fired,
            "cancelled": self._cancelled,
        }
