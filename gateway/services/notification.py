"""
gateway/services/notification.py

Notification dispatcher for alerts and suggestions.
- NotificationDispatcher: the narrow interface the core invokes
- EmailSender: SendGrid v3 HTTP API with retry on 5xx
- DefaultDispatcher: email + real-time (WebSocket) channels

The core builds payloads and records per-recipient outcomes; it never
retries delivery itself.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol

import httpx
import structlog

from config import settings
from gateway.constants import EMAIL_BACKOFF_BASE_S, EMAIL_MAX_RETRIES
from gateway.errors import DispatchFailed
from gateway.schemas import (
    AlertPayload,
    DeliveryChannel,
    DeliveryResult,
    Recipient,
    Suggestion,
)
from gateway.services.realtime import ConnectionManager

logger = structlog.get_logger(__name__)


class NotificationDispatcher(Protocol):
    """Delivery collaborator; reports one DeliveryResult per recipient."""

    async def dispatch(
        self, payload: AlertPayload, channel: DeliveryChannel
    ) -> list[DeliveryResult]: ...

    async def notify_suggestions(
        self, patient_id: str, suggestions: list[Suggestion]
    ) -> bool: ...


class EmailSender:
    """Sends email through the SendGrid v3 mail/send endpoint."""

    def __init__(
        self,
        api_key: str = settings.sendgrid_api_key,
        sender: str = settings.sendgrid_sender_email,
        base_url: str = settings.sendgrid_base_url,
        timeout: float = settings.email_timeout_s,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._sleep = sleep

    async def send(self, to: list[str], subject: str, html: str) -> int:
        """
        Send one message, retrying up to EMAIL_MAX_RETRIES times on 5xx.

        Returns the number of attempts used. Raises DispatchFailed otherwise.
        """
        if not self._api_key:
            raise DispatchFailed("email", "SENDGRID_API_KEY is not set")
        if not self._sender:
            raise DispatchFailed("email", "SENDGRID_SENDER_EMAIL is not set")

        body = {
            "personalizations": [{"to": [{"email": addr} for addr in to]}],
            "from": {"email": self._sender},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            for attempt in range(EMAIL_MAX_RETRIES + 1):
                try:
                    response = await client.post("/v3/mail/send", json=body, headers=headers)
                    response.raise_for_status()
                    return attempt + 1
                except httpx.HTTPStatusError as exc:
                    status = exc.response.status_code
                    if 500 <= status < 600 and attempt < EMAIL_MAX_RETRIES:
                        delay = EMAIL_BACKOFF_BASE_S * 2**attempt
                        logger.warning(
                            "email_send_retrying",
                            status=status,
                            attempt=attempt + 1,
                            delay_s=delay,
                        )
                        await self._sleep(delay)
                        continue
                    raise DispatchFailed(
                        "email", f"HTTP {status} after {attempt + 1} attempt(s)"
                    ) from exc
                except httpx.TransportError as exc:
                    raise DispatchFailed("email", f"transport error: {exc}") from exc
        raise DispatchFailed("email", "retries exhausted")


def _alert_html(payload: AlertPayload, recipient: Recipient) -> str:
    return (
        f"<h2>{payload.title}</h2>"
        f"<p>{payload.message_for(recipient)}</p>"
        "<p>Please review the recent readings in the monitoring dashboard.</p>"
    )


class DefaultDispatcher:
    """Delivers alerts by email and over live WebSocket connections."""

    def __init__(self, email: EmailSender, realtime: ConnectionManager) -> None:
        self._email = email
        self._realtime = realtime

    async def dispatch(
        self,
        payload: AlertPayload,
        channel: DeliveryChannel,
    ) -> list[DeliveryResult]:
        if channel is DeliveryChannel.EMAIL:
            return [await self._send_email(payload, r) for r in payload.recipients]
        return [await self._push(payload, r) for r in payload.recipients]

    async def _send_email(self, payload: AlertPayload, recipient: Recipient) -> DeliveryResult:
        if not recipient.email:
            return DeliveryResult(
                recipient_id=recipient.user_id,
                channel=DeliveryChannel.EMAIL,
                success=False,
                error="no email address on file",
            )
        try:
            await self._email.send(
                [recipient.email], payload.title, _alert_html(payload, recipient)
            )
        except DispatchFailed as exc:
            logger.warning(
                "alert_email_failed",
                alert_id=payload.alert_id,
                recipient_id=recipient.user_id,
                reason=exc.reason,
            )
            return DeliveryResult(
                recipient_id=recipient.user_id,
                channel=DeliveryChannel.EMAIL,
                success=False,
                error=exc.reason,
            )
        logger.info(
            "alert_email_sent",
            alert_id=payload.alert_id,
            recipient_id=recipient.user_id,
        )
        return DeliveryResult(
            recipient_id=recipient.user_id,
            channel=DeliveryChannel.EMAIL,
            success=True,
        )

    async def _push(self, payload: AlertPayload, recipient: Recipient) -> DeliveryResult:
        delivered = await self._realtime.send(
            recipient.user_id,
            {
                "type": "alert",
                "title": payload.title,
                "message": payload.message_for(recipient),
                "patient_id": payload.patient_id,
                "alert_id": payload.alert_id,
                "timestamp": datetime.utcnow().isoformat(),
            },
        )
        return DeliveryResult(
            recipient_id=recipient.user_id,
            channel=DeliveryChannel.REALTIME,
            success=delivered,
            error=None if delivered else "recipient not connected",
        )

    async def notify_suggestions(
        self,
        patient_id: str,
        suggestions: list[Suggestion],
    ) -> bool:
        if not suggestions:
            return False
        return await self._realtime.send(
            patient_id,
            {
                "type": "suggestion",
                "title": "New insights from your readings",
                "message": suggestions[0].message,
                "count": len(suggestions),
                "timestamp": datetime.utcnow().isoformat(),
            },
        )
