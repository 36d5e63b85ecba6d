"""
WebSocket Dispatcher — delivers notifications to connected dashboards.

Publishes on the broadcaster's ``role:<recipient>`` topic; the
``/ws/topics/{topic}`` endpoint forwards it to every connected client.
A notification with no subscriber is still a successful publish.
"""

from __future__ import annotations

import logging

from careline.alerting.broadcaster import Broadcaster, role_topic
from careline.alerting.channels import (
    ChannelDispatcher,
    DeliveryResult,
    NotificationRequest,
)

logger = logging.getLogger("alerting.dispatchers.websocket")


class WebSocketDispatcher(ChannelDispatcher):
    """Push notifications to topic subscribers."""

    channel_name = "websocket"

    def __init__(self, broadcaster: Broadcaster) -> None:
        self._broadcaster = broadcaster

    async def send(self, request: NotificationRequest) -> DeliveryResult:
        topic = role_topic(request.recipient.removeprefix("role:"))
        self._broadcaster.publish(
            topic,
            "notification",
            {
                "notification_type": request.notification_type,
                "message": request.message,
                "case_id": request.case_id,
                "patient_id": request.patient_id,
                **request.metadata,
            },
        )
        logger.info(
            "WebSocket dispatch → %s: %s",
            topic, request.message[:80] if request.message else "(empty)",
        )
        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            recipient=request.recipient,
        )
