"""
Email notifications via SendGrid.

Used for the slower, more detailed copies of a page: supervisors and
emergency contacts with an address on file get the same text by mail.

Environment:
  SENDGRID_API_KEY     API key; without it the dispatcher runs in stub mode
  SENDGRID_FROM_EMAIL  sender address (default "alerts@careline.app")
  SENDGRID_FROM_NAME   sender display name (default "CareLine Alerts")
"""

from __future__ import annotations

import asyncio
import logging
import os

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Email, Mail, To

from careline.alerting.channels import (
    ChannelDispatcher,
    DeliveryResult,
    NotificationRequest,
)

logger = logging.getLogger("alerting.dispatchers.email")

SUBJECTS = {
    "emergency_assignment": "EMERGENCY: you are the primary responder",
    "emergency_backup": "EMERGENCY: backup responder standby",
    "escalation": "ESCALATION: emergency unacknowledged",
    "emergency_contact": "Urgent: emergency alert for your contact",
}


def email_subject(request: NotificationRequest) -> str:
    if "subject" in request.metadata:
        return request.metadata["subject"]
    subject = SUBJECTS.get(
        request.notification_type,
        request.notification_type.replace("_", " ").capitalize(),
    )
    if request.case_id:
        subject = f"{subject} [{request.case_id}]"
    return f"CareLine: {subject}"


class EmailDispatcher(ChannelDispatcher):
    """SendGrid-backed dispatcher.  One plain-text mail per request."""

    channel_name = "email"

    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        from_name: str | None = None,
    ) -> None:
        self._api_key = api_key or os.getenv("SENDGRID_API_KEY", "")
        self._sender = Email(
            from_email or os.getenv("SENDGRID_FROM_EMAIL", "alerts@careline.app"),
            from_name or os.getenv("SENDGRID_FROM_NAME", "CareLine Alerts"),
        )
        self._client: SendGridAPIClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _result(self, request: NotificationRequest, success: bool,
                error: str | None = None) -> DeliveryResult:
        return DeliveryResult(
            success=success,
            channel=self.channel_name,
            recipient=request.recipient,
            error=error,
        )

    async def send(self, request: NotificationRequest) -> DeliveryResult:
        address = request.metadata.get("to", "")
        if not address:
            logger.warning(
                "No email address for %s (%s, case %s)",
                request.recipient, request.notification_type, request.case_id,
            )
            return self._result(request, False, "No recipient email address")

        subject = email_subject(request)

        if not self.configured:
            logger.info("Email (stub) %s -> %s: %s", subject, address, request.message[:80])
            return self._result(request, True, "stub_mode")

        mail = Mail(
            from_email=self._sender,
            to_emails=To(address),
            subject=subject,
            plain_text_content=request.message,
        )
        try:
            if self._client is None:
                self._client = SendGridAPIClient(self._api_key)
            response = await asyncio.to_thread(self._client.send, mail)
        except Exception as exc:
            logger.error("Email for case %s to %s failed: %s", request.case_id, address, exc)
            return self._result(request, False, str(exc))

        if not 200 <= response.status_code < 300:
            logger.error(
                "SendGrid rejected mail for case %s: status=%d body=%s",
                request.case_id, response.status_code, response.body,
            )
            return self._result(
                request, False, f"SendGrid returned status {response.status_code}"
            )

        logger.info("Email for case %s sent to %s", request.case_id, address)
        return self._result(request, True)
