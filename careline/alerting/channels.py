"""
Channel Abstractions — outbound delivery of notifications.

The Notifier never talks to a transport directly.  Adding a channel is:
  1. Implement a ChannelDispatcher subclass
  2. Register it in setup.py
Zero changes to the case state machine, the scheduler or the queue.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from careline import settings

logger = logging.getLogger("alerting.channels")


class NotificationRequest(BaseModel):
    """One message for one recipient on one channel."""

    recipient: str          # responder id, "role:supervisor", "contact:<phone>"
    channel: str            # must match a registered ChannelDispatcher.channel_name
    notification_type: str  # emergency_assignment, emergency_backup, escalation, ...
    message: str = ""
    case_id: Optional[str] = None
    patient_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    # e.g. {"phone": "+44...", "to": "a@b.c", "subject": "...", "level": 3}


class DeliveryResult(BaseModel):
    """Outcome of a delivery (after any retries)."""

    success: bool
    channel: str
    recipient: str
    attempts: int = 1
    error: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ChannelDispatcher(ABC):
    """Abstract outbound channel."""

    channel_name: str = ""  # overridden by subclasses

    @abstractmethod
    async def send(self, request: NotificationRequest) -> DeliveryResult:
        """Deliver a single notification.  Must not raise — return DeliveryResult."""


class DispatcherRegistry:
    """
    Registry of active ChannelDispatchers.

    ``dispatch()`` retries a failed delivery up to ``max_attempts`` times
    and always returns a DeliveryResult; transport errors never reach the
    caller.
    """

    def __init__(
        self,
        max_attempts: int = settings.NOTIFICATION_MAX_ATTEMPTS,
        retry_delay: float = settings.NOTIFICATION_RETRY_DELAY,
    ) -> None:
        self._dispatchers: dict[str, ChannelDispatcher] = {}
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    def register(self, dispatcher: ChannelDispatcher) -> None:
        name = dispatcher.channel_name
        self._dispatchers[name] = dispatcher
        logger.info("Registered channel dispatcher: %s", name)

    def unregister(self, channel_name: str) -> None:
        self._dispatchers.pop(channel_name, None)

    def get(self, channel_name: str) -> ChannelDispatcher | None:
        return self._dispatchers.get(channel_name)

    @property
    def registered_channels(self) -> list[str]:
        return list(self._dispatchers.keys())

    async def dispatch(self, request: NotificationRequest) -> DeliveryResult:
        dispatcher = self.get(request.channel)
        if dispatcher is None:
            logger.warning(
                "No dispatcher for channel '%s' — %s to %s not delivered",
                request.channel, request.notification_type, request.recipient,
            )
            return DeliveryResult(
                success=False,
                channel=request.channel,
                recipient=request.recipient,
                attempts=0,
                error=f"No dispatcher registered for channel '{request.channel}'",
            )

        last_error: str | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                result = await dispatcher.send(request)
            except Exception as exc:
                result = DeliveryResult(
                    success=False,
                    channel=request.channel,
                    recipient=request.recipient,
                    error=str(exc),
                )
                logger.warning(
                    "Dispatcher '%s' error (attempt %d/%d): %s",
                    request.channel, attempt, self._max_attempts, exc,
                )
            result.attempts = attempt
            if result.success:
                return result
            last_error = result.error
            if attempt < self._max_attempts:
                logger.warning(
                    "Dispatch failed for %s on %s (attempt %d) — retrying",
                    request.recipient, request.channel, attempt,
                )
                await asyncio.sleep(self._retry_delay)

        logger.error(
            "Dispatch to %s on %s failed after %d attempts: %s",
            request.recipient, request.channel, self._max_attempts, last_error,
        )
        return DeliveryResult(
            success=False,
            channel=request.channel,
            recipient=request.recipient,
            attempts=self._max_attempts,
            error=last_error or "Dispatch failed",
        )
