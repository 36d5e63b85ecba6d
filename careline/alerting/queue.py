"""
Per-Patient Work Queue — serialises case-affecting work for each patient.

One asyncio.Queue and one worker task per active patient.  Jobs run FIFO,
one at a time; different patients run in parallel.  ``submit`` hands the
job's result (or exception) back to the caller through a Future, so the
HTTP layer can still answer synchronously.

Idle queues are cleaned up after a configurable timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from careline import settings
from careline.alerting.errors import CareLineError

logger = logging.getLogger("alerting.queue")

T = TypeVar("T")
Job = Callable[[], Awaitable[Any]]


class PatientWorkQueue:
    """
    Manages one asyncio.Queue per patient_id.

    Usage:
        queue = PatientWorkQueue()
        await queue.start()
        result = await queue.submit(patient_id, lambda: do_work(...))
    """

    SLOW_JOB_SECONDS = 10

    def __init__(
        self,
        idle_timeout_seconds: int = settings.PATIENT_QUEUE_IDLE_TIMEOUT,
        cleanup_interval_seconds: float = 60,
    ) -> None:
        self._idle_timeout = idle_timeout_seconds
        self._cleanup_interval = cleanup_interval_seconds

        self._queues: dict[str, asyncio.Queue[tuple[Job, asyncio.Future]]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._last_activity: dict[str, datetime] = {}
        self._busy: set[str] = set()
        self._cleanup_task: asyncio.Task | None = None
        self._running = False

    # ── Public API ──

    async def start(self) -> None:
        """Start the idle-cleanup background loop."""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("PatientWorkQueue started (idle timeout=%ds)", self._idle_timeout)

    async def stop(self) -> None:
        """Stop every worker.  Jobs still waiting are cancelled."""
        self._running = False
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        for pid in list(self._workers.keys()):
            await self._destroy_queue(pid)

        logger.info("PatientWorkQueue stopped")

    async def submit(self, patient_id: str, job: Job) -> Any:
        """Run ``job`` on the patient's queue and return its result."""
        if patient_id not in self._queues:
            self._create_queue(patient_id)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._last_activity[patient_id] = datetime.now(timezone.utc)
        await self._queues[patient_id].put((job, future))
        logger.debug(
            "Submitted job for patient %s (depth=%d)",
            patient_id, self._queues[patient_id].qsize(),
        )
        return await future

    @property
    def active_patients(self) -> list[str]:
        return list(self._queues.keys())

    @property
    def active_count(self) -> int:
        return len(self._queues)

    def queue_depth(self, patient_id: str) -> int:
        """Number of waiting jobs for a patient.  Returns 0 if no queue."""
        q = self._queues.get(patient_id)
        return q.qsize() if q else 0

    # ── Internal ──

    def _create_queue(self, patient_id: str) -> None:
        q: asyncio.Queue[tuple[Job, asyncio.Future]] = asyncio.Queue()
        self._queues[patient_id] = q
        self._last_activity[patient_id] = datetime.now(timezone.utc)
        self._workers[patient_id] = asyncio.create_task(
            self._worker_loop(patient_id, q)
        )
        logger.debug("Created queue + worker for patient %s", patient_id)

    async def _worker_loop(
        self, patient_id: str, q: asyncio.Queue[tuple[Job, asyncio.Future]]
    ) -> None:
        """Run jobs for a single patient, one at a time."""
        while True:
            try:
                job, future = await q.get()
            except asyncio.CancelledError:
                break

            self._busy.add(patient_id)
            self._last_activity[patient_id] = datetime.now(timezone.utc)
            t0 = time.monotonic()
            try:
                result = await job()
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if not isinstance(exc, CareLineError):
                    logger.error(
                        "Error processing job for patient %s: %s",
                        patient_id, exc, exc_info=True,
                    )
                if not future.done():
                    future.set_exception(exc)
            finally:
                self._busy.discard(patient_id)
                self._last_activity[patient_id] = datetime.now(timezone.utc)
                q.task_done()

            elapsed = time.monotonic() - t0
            if elapsed > self.SLOW_JOB_SECONDS:
                logger.warning(
                    "Slow job for %s took %.1fs", patient_id, elapsed,
                )

    async def _destroy_queue(self, patient_id: str) -> None:
        q = self._queues.pop(patient_id, None)
        worker = self._workers.pop(patient_id, None)
        self._last_activity.pop(patient_id, None)
        if worker and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        while q is not None and not q.empty():
            _, future = q.get_nowait()
            if not future.done():
                future.cancel()
        logger.debug("Destroyed queue for patient %s", patient_id)

    def _is_idle(self, patient_id: str) -> bool:
        q = self._queues.get(patient_id)
        if patient_id in self._busy or (q is not None and not q.empty()):
            return False
        last = self._last_activity.get(patient_id)
        if last is None:
            return False
        elapsed = (datetime.now(timezone.utc) - last).total_seconds()
        return elapsed > self._idle_timeout

    async def _cleanup_loop(self) -> None:
        """Periodically destroy idle queues."""
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
                for pid in list(self._queues.keys()):
                    # checked right before destroy; earlier destroys yield
                    if not self._is_idle(pid):
                        continue
                    logger.info("Cleaning up idle queue for patient %s", pid)
                    await self._destroy_queue(pid)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Queue cleanup error: %s", exc)
