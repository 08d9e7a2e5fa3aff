import json
from datetime import timedelta
from types import SimpleNamespace

import httpx
import pytest

from otp_delivery.core.config import settings
from otp_delivery.core.security import verify_signature
from otp_delivery.models.channel import DeliveryChannel
from otp_delivery.models.delivery import DeliveryEventType, DeliveryState, Recipient, utcnow
from otp_delivery.models.responses import ProviderResponse, ProviderStatus
from otp_delivery.services.health import ChannelHealthBoard
from otp_delivery.services.sessions import DeliverySessionManager
from otp_delivery.tasks import delivery_tasks
from otp_delivery.tasks.delivery_tasks import (
    _confirm_delivery,
    _send_code,
    build_delivery_report_events,
    build_status_events,
    confirmation_delay,
    post_status_events,
)

from conftest import NOW, FakeGateway, service

CALLBACK = "http://api.test/api/v1/deliveries/status"


def test_failure_becomes_failed_event():
    response = ProviderResponse(success=False, status=ProviderStatus.FAILED, provider_name="mock",
                                error_message="Carrier rejected")
    events = build_status_events("a-1", response, now=NOW)
    assert [e.event for e in events] == [DeliveryEventType.FAILED]
    assert events[0].error == "Carrier rejected"


def test_acceptance_becomes_sent_with_estimate():
    response = ProviderResponse(success=True, status=ProviderStatus.SENT, provider_name="mock",
                                message_id="m-1", estimated_delivery_seconds=12)
    events = build_status_events("a-1", response, now=NOW)
    assert [e.event for e in events] == [DeliveryEventType.SENT]
    assert events[0].estimated_delivery_at == NOW + timedelta(seconds=12)
    assert events[0].message_id == "m-1"


def test_immediate_delivery_adds_delivered():
    response = ProviderResponse(success=True, status=ProviderStatus.DELIVERED, provider_name="mock")
    events = build_status_events("a-1", response, now=NOW)
    assert [e.event for e in events] == [DeliveryEventType.SENT, DeliveryEventType.DELIVERED]


@pytest.mark.asyncio
async def test_send_code_with_mock_provider(monkeypatch):
    monkeypatch.setattr(settings, "PROVIDER_CONFIGS", {"mock": {"success_rate": 1.0, "delay_ms": 0}})
    events = await _send_code("a-1", "sms", "+15550100", "code", "mock")
    assert [e.event for e in events] == [DeliveryEventType.SENT]
    assert events[0].provider_name == "mock"


@pytest.mark.asyncio
async def test_send_code_with_unknown_provider():
    events = await _send_code("a-1", "sms", "+15550100", "code", "nope")
    assert events[0].event == DeliveryEventType.FAILED
    assert events[0].error.startswith("Provider nope unavailable")


def payloads(*kinds):
    return [{"attempt_id": "a-1", "event": kind} for kind in kinds]


@pytest.mark.asyncio
async def test_post_status_events_in_order(monkeypatch):
    monkeypatch.setattr(settings, "STATUS_WEBHOOK_SECRET", None)
    seen = []

    def handler(request):
        seen.append(json.loads(request.content)["event"])
        assert "X-Signature" not in request.headers
        return httpx.Response(200, json={})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sent = await post_status_events(payloads("sent", "delivered"), client, CALLBACK)

    assert sent == 2
    assert seen == ["sent", "delivered"]


@pytest.mark.asyncio
async def test_post_status_events_stops_on_server_error():
    def handler(request):
        if json.loads(request.content)["event"] == "delivered":
            return httpx.Response(502)
        return httpx.Response(200, json={})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sent = await post_status_events(payloads("sent", "delivered"), client, CALLBACK)

    assert sent == 1


@pytest.mark.asyncio
async def test_post_status_events_rejected_events_are_consumed():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(409))) as client:
        sent = await post_status_events(payloads("sent"), client, CALLBACK)
    assert sent == 1


@pytest.mark.asyncio
async def test_post_status_events_signs_body(monkeypatch):
    monkeypatch.setattr(settings, "STATUS_WEBHOOK_SECRET", "s3cret")
    signatures = []

    def handler(request):
        signatures.append(verify_signature(request.content, request.headers.get("X-Signature"), "s3cret"))
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await post_status_events(payloads("failed"), client, CALLBACK)

    assert signatures == [True]


CONFIRMING_MOCK = {"mock": {"success_rate": 1.0, "delivery_rate": 1.0, "delay_ms": 0, "eta_seconds": 10}}


def test_delivery_report_events():
    delivered = ProviderResponse(success=True, status=ProviderStatus.DELIVERED, provider_name="mock", message_id="m-1")
    events = build_delivery_report_events("a-1", delivered, now=NOW)
    assert [e.event for e in events] == [DeliveryEventType.DELIVERED]
    assert events[0].error is None

    lost = ProviderResponse(success=False, status=ProviderStatus.FAILED, provider_name="mock",
                            error_message="Handset unreachable")
    assert build_delivery_report_events("a-1", lost, now=NOW)[0].error == "Handset unreachable"

    pending = ProviderResponse(success=True, status=ProviderStatus.SENT, provider_name="mock")
    assert build_delivery_report_events("a-1", pending, now=NOW) == []


def test_confirmation_delay():
    sent = build_status_events("a-1", ProviderResponse(
        success=True, status=ProviderStatus.SENT, provider_name="mock", message_id="m-1",
        estimated_delivery_seconds=10,
    ), now=NOW)
    assert confirmation_delay(sent, "mock", now=NOW) == 10.0
    assert confirmation_delay(sent, "mock", now=NOW + timedelta(seconds=30)) == 0.0
    # MSG91 reports through its webhook
    assert confirmation_delay(sent, "msg91", now=NOW) is None

    failed = build_status_events("a-1", ProviderResponse(
        success=False, status=ProviderStatus.FAILED, provider_name="mock",
    ), now=NOW)
    assert confirmation_delay(failed, "mock", now=NOW) is None


@pytest.mark.asyncio
async def test_confirm_delivery_with_mock_provider(monkeypatch):
    monkeypatch.setattr(settings, "PROVIDER_CONFIGS", CONFIRMING_MOCK)
    events = await _confirm_delivery("a-1", "sms", "mock", "m-1")
    assert [e.event for e in events] == [DeliveryEventType.DELIVERED]
    assert events[0].message_id == "m-1"

    monkeypatch.setattr(settings, "PROVIDER_CONFIGS", {"mock": {"delivery_rate": 0.0}})
    events = await _confirm_delivery("a-1", "email", "mock", "m-1")
    assert events[0].event == DeliveryEventType.FAILED
    assert events[0].error == "Mock email delivery not confirmed by carrier"


class RecordingTask:
    def __init__(self):
        self.calls = []

    def delay(self, *args):
        self.calls.append(args)

    def apply_async(self, args, countdown):
        self.calls.append((args, countdown))


def test_send_code_task_schedules_confirmation(monkeypatch):
    monkeypatch.setattr(settings, "PROVIDER_CONFIGS", CONFIRMING_MOCK)
    reports, confirmations = RecordingTask(), RecordingTask()
    monkeypatch.setattr(delivery_tasks, "report_status_task", reports)
    monkeypatch.setattr(delivery_tasks, "confirm_delivery_task", confirmations)
    monkeypatch.setattr(delivery_tasks, "provider_stats", SimpleNamespace(record=lambda *args: None))

    result = delivery_tasks.send_code_task("a-1", "sms", "+15550100", "code", "mock")

    assert result["events"] == ["sent"]
    assert [event["event"] for event in reports.calls[0][0]] == ["sent"]
    (args, countdown), = confirmations.calls
    assert args[:3] == ["a-1", "sms", "mock"]
    assert args[3] == reports.calls[0][0][0]["message_id"]
    assert 0 < countdown <= 10


@pytest.mark.asyncio
async def test_confirmed_send_is_not_timed_out(monkeypatch):
    monkeypatch.setattr(settings, "PROVIDER_CONFIGS", CONFIRMING_MOCK)
    board = ChannelHealthBoard(channels=[DeliveryChannel.SMS])
    board.update(DeliveryChannel.SMS, [service("mock", DeliveryChannel.SMS)])
    sessions = DeliverySessionManager(gateway=FakeGateway(), health_board=board)

    view = await sessions.start(Recipient(phone="+15550100"), "code", request_id="req-1")
    attempt_id = view.attempt.id

    for event in await _send_code(attempt_id, "sms", "+15550100", "code", "mock"):
        await sessions.route_status(event)
    message_id = sessions.get("req-1").attempt.message_id
    for event in await _confirm_delivery(attempt_id, "sms", "mock", message_id):
        await sessions.route_status(event)

    later = utcnow() + timedelta(seconds=61)
    assert await sessions.expire_stale(now=later) == []
    attempt = sessions.get("req-1").attempt
    assert attempt.state == DeliveryState.DELIVERED
    assert attempt.provider_name == "mock"
    assert sessions.get("req-1").snapshot().progress == 100
