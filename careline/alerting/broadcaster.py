"""
Real-time Broadcaster — topic-scoped publish/subscribe.

Topics:
  patient:<patient_id>   case and measurement updates for one patient
  role:<role>            notifications for a responder role or responder
  global                 every case lifecycle change

Each subscriber owns a bounded asyncio.Queue.  Publishing never blocks:
if a subscriber's queue is full the event is dropped for that subscriber
and logged.  Slow WebSocket clients cannot stall the case lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger("alerting.broadcaster")

GLOBAL_TOPIC = "global"


def patient_topic(patient_id: str) -> str:
    return f"patient:{patient_id}"


def role_topic(role: str) -> str:
    return f"role:{role}"


class BroadcastEvent(BaseModel):
    """One message delivered to subscribers of a topic."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str  # case_created, case_updated, case_escalated, vital_signs_update, notification
    topic: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class Subscription:
    """A single subscriber's view of one topic."""

    def __init__(self, topic: str, maxsize: int) -> None:
        self.topic = topic
        self.queue: asyncio.Queue[BroadcastEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def get(self, timeout: float | None = None) -> BroadcastEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class Broadcaster:
    DEFAULT_QUEUE_SIZE = 100

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._published = 0

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(topic, self._queue_size)
        self._subscribers[topic].add(sub)
        logger.debug("Subscribed to %s (%d subscribers)", topic, len(self._subscribers[topic]))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.topic]

    def publish(
        self, topic: str, event_type: str, payload: dict[str, Any] | None = None
    ) -> BroadcastEvent:
        """Fan an event out to every subscriber of ``topic``.  Never blocks."""
        event = BroadcastEvent(event_type=event_type, topic=topic, payload=payload or {})
        self._published += 1
        for sub in list(self._subscribers.get(topic, ())):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.warning(
                    "Subscriber queue full on %s — dropped %s", topic, event_type,
                )
        return event

    def publish_case(self, event_type: str, summary: dict[str, Any]) -> None:
        """Publish a case change to its patient topic and the global topic."""
        self.publish(patient_topic(summary["patient_id"]), event_type, summary)
        self.publish(GLOBAL_TOPIC, event_type, summary)

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(topic, ()))
        return sum(len(s) for s in self._subscribers.values())

    def get_status(self) -> dict:
        return {
            "topics": len(self._subscribers),
            "subscribers": self.subscriber_count(),
            "published": self._published,
        }
