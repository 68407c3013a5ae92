"""
tests/test_notification.py

Unit tests for gateway/services/notification.py and realtime.py.
HTTP traffic is served by httpx.MockTransport; sleeps are recorded, not awaited.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from gateway.errors import DispatchFailed
from gateway.schemas import AlertPayload, DeliveryChannel, Recipient, RecipientRole
from gateway.services.notification import DefaultDispatcher, EmailSender
from gateway.services.realtime import ConnectionManager
from tests.fixtures import TEST_PATIENT_ID, TEST_SPECIALIST_ID


def _sender(statuses: list[int], sleeps: list[float]) -> tuple[EmailSender, list[httpx.Request]]:
    requests: list[httpx.Request] = []
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(remaining.pop(0))

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    sender = EmailSender(
        api_key="SG.test",
        sender="alerts@example.com",
        base_url="https://sendgrid.test",
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )
    return sender, requests


def _payload() -> AlertPayload:
    return AlertPayload(
        alert_id=1,
        patient_id=TEST_PATIENT_ID,
        specialist_id=TEST_SPECIALIST_ID,
        title="High Frequency of Abnormal Readings",
        message="patient message",
        specialist_message="specialist message",
        recipients=[
            Recipient(user_id=TEST_PATIENT_ID, role=RecipientRole.PATIENT, email="p@example.com"),
            Recipient(user_id=TEST_SPECIALIST_ID, role=RecipientRole.SPECIALIST),
        ],
    )


@pytest.mark.asyncio
async def test_email_sent_on_first_attempt() -> None:
    sleeps: list[float] = []
    sender, requests = _sender([202], sleeps)

    attempts = await sender.send(["p@example.com"], "subject", "<p>hi</p>")

    assert attempts == 1
    assert sleeps == []
    assert requests[0].url.path == "/v3/mail/send"
    assert requests[0].headers["Authorization"] == "Bearer SG.test"


@pytest.mark.asyncio
async def test_email_retries_5xx_with_backoff() -> None:
    sleeps: list[float] = []
    sender, requests = _sender([503, 500, 202], sleeps)

    attempts = await sender.send(["p@example.com"], "subject", "<p>hi</p>")

    assert attempts == 3
    assert sleeps == [1.0, 2.0]
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_email_gives_up_after_max_retries() -> None:
    sleeps: list[float] = []
    sender, requests = _sender([500, 502, 503], sleeps)

    with pytest.raises(DispatchFailed) as excinfo:
        await sender.send(["p@example.com"], "subject", "<p>hi</p>")

    assert "HTTP 503 after 3 attempt(s)" in excinfo.value.reason
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_email_4xx_is_not_retried() -> None:
    sleeps: list[float] = []
    sender, requests = _sender([401], sleeps)

    with pytest.raises(DispatchFailed):
        await sender.send(["p@example.com"], "subject", "<p>hi</p>")

    assert len(requests) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_email_without_api_key_fails_fast() -> None:
    sender = EmailSender(api_key="", sender="alerts@example.com")

    with pytest.raises(DispatchFailed) as excinfo:
        await sender.send(["p@example.com"], "subject", "<p>hi</p>")

    assert "SENDGRID_API_KEY" in excinfo.value.reason


@pytest.mark.asyncio
async def test_email_channel_reports_each_recipient() -> None:
    """Recipients without an address fail; the rest are sent."""
    email = AsyncMock(spec=EmailSender)
    dispatcher = DefaultDispatcher(email, ConnectionManager())

    results = await dispatcher.dispatch(_payload(), DeliveryChannel.EMAIL)

    assert [(r.recipient_id, r.success) for r in results] == [
        (TEST_PATIENT_ID, True),
        (TEST_SPECIALIST_ID, False),
    ]
    assert results[1].error == "no email address on file"
    email.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_email_failure_becomes_failed_result() -> None:
    email = AsyncMock(spec=EmailSender)
    email.send.side_effect = DispatchFailed("email", "HTTP 500 after 3 attempt(s)")
    dispatcher = DefaultDispatcher(email, ConnectionManager())

    results = await dispatcher.dispatch(_payload(), DeliveryChannel.EMAIL)

    assert results[0].success is False
    assert results[0].error == "HTTP 500 after 3 attempt(s)"


@pytest.mark.asyncio
async def test_realtime_channel_delivers_to_connected_users_only() -> None:
    manager = ConnectionManager()
    socket = AsyncMock()
    await manager.connect(TEST_SPECIALIST_ID, socket)
    dispatcher = DefaultDispatcher(AsyncMock(spec=EmailSender), manager)

    results = await dispatcher.dispatch(_payload(), DeliveryChannel.REALTIME)

    assert [(r.recipient_id, r.success) for r in results] == [
        (TEST_PATIENT_ID, False),
        (TEST_SPECIALIST_ID, True),
    ]
    sent = socket.send_json.await_args_list[-1].args[0]
    assert sent["type"] == "alert"
    assert sent["message"] == "specialist message"


@pytest.mark.asyncio
async def test_disconnect_ignores_replaced_socket() -> None:
    manager = ConnectionManager()
    old, new = AsyncMock(), AsyncMock()
    await manager.connect(TEST_PATIENT_ID, old)
    await manager.connect(TEST_PATIENT_ID, new)

    manager.disconnect(TEST_PATIENT_ID, old)

    assert manager.is_connected(TEST_PATIENT_ID)
    manager.disconnect(TEST_PATIENT_ID, new)
    assert not manager.is_connected(TEST_PATIENT_ID)


@pytest.mark.asyncio
async def test_failing_socket_does_not_abort_realtime_channel() -> None:
    """A half-closed socket fails its own recipient; the next one is still pushed."""
    manager = ConnectionManager()
    stale, live = AsyncMock(), AsyncMock()
    await manager.connect(TEST_PATIENT_ID, stale)
    await manager.connect(TEST_SPECIALIST_ID, live)
    stale.send_json.side_effect = RuntimeError(
        "Cannot call send once a close message has been sent"
    )
    dispatcher = DefaultDispatcher(AsyncMock(spec=EmailSender), manager)

    results = await dispatcher.dispatch(_payload(), DeliveryChannel.REALTIME)

    assert [(r.recipient_id, r.success) for r in results] == [
        (TEST_PATIENT_ID, False),
        (TEST_SPECIALIST_ID, True),
    ]
    assert live.send_json.await_args_list[-1].args[0]["type"] == "alert"
    assert not manager.is_connected(TEST_PATIENT_ID)
    assert manager.is_connected(TEST_SPECIALIST_ID)
