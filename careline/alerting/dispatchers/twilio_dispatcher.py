"""
SMS paging via Twilio.

Responders and emergency contacts get a short text whenever a case is
opened or escalated.  Without TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN the
dispatcher logs the page and reports ``stub_mode`` instead of sending.
TWILIO_FROM_NUMBER is the sending number.
"""

from __future__ import annotations

import asyncio
import logging
import os

from twilio.rest import Client

from careline.alerting.channels import (
    ChannelDispatcher,
    DeliveryResult,
    NotificationRequest,
)

logger = logging.getLogger("alerting.dispatchers.twilio")

# Twilio rejects bodies longer than this (10 concatenated segments)
SMS_MAX_LENGTH = 1600


def sms_body(request: NotificationRequest) -> str:
    """Prefix the page with its case id so a reply can be matched up."""
    body = request.message
    if request.case_id and request.case_id not in body:
        body = f"[{request.case_id}] {body}"
    if len(body) > SMS_MAX_LENGTH:
        body = body[: SMS_MAX_LENGTH - 3] + "..."
    return body


class TwilioSMSDispatcher(ChannelDispatcher):

    channel_name = "sms"

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
    ) -> None:
        self._account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID", "")
        self._auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN", "")
        self._from_number = from_number or os.getenv("TWILIO_FROM_NUMBER", "")
        self._client: Client | None = None

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token)

    def _result(self, request: NotificationRequest, error: str | None = None,
                success: bool | None = None) -> DeliveryResult:
        return DeliveryResult(
            success=error is None if success is None else success,
            channel=self.channel_name,
            recipient=request.recipient,
            error=error,
        )

    async def send(self, request: NotificationRequest) -> DeliveryResult:
        phone = request.metadata.get("phone", "")
        if not phone:
            logger.warning(
                "No phone number for %s (%s, case %s)",
                request.recipient, request.notification_type, request.case_id,
            )
            return self._result(request, error="No recipient phone number")

        body = sms_body(request)

        if not self.configured:
            logger.info("SMS page (stub) %s -> %s: %s", request.case_id, phone, body[:80])
            return self._result(request, error="stub_mode", success=True)

        try:
            if self._client is None:
                self._client = Client(self._account_sid, self._auth_token)
            # twilio's client is blocking
            sms = await asyncio.to_thread(
                self._client.messages.create,
                body=body,
                from_=self._from_number,
                to=phone,
            )
        except Exception as exc:
            logger.error("SMS page for case %s to %s failed: %s", request.case_id, phone, exc)
            return self._result(request, error=str(exc))

        logger.info("SMS page for case %s sent to %s (sid=%s)", request.case_id, phone, sms.sid)
        return self._result(request)
