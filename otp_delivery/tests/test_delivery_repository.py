from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from otp_delivery.core.config import settings
from otp_delivery.core.database import get_db
from otp_delivery.main import app
from otp_delivery.models.channel import DeliveryChannel
from otp_delivery.models.delivery import DeliveryState
from otp_delivery.models.delivery_record import DeliveryRecord
from otp_delivery.repositories.delivery_repository import analyze_failures, evaluate_alerts

from conftest import NOW

SMS = DeliveryChannel.SMS
EMAIL = DeliveryChannel.EMAIL


def record(i, state, provider="twilio", error=None, channel=SMS, minutes_ago=30):
    created = NOW - timedelta(minutes=minutes_ago)
    return DeliveryRecord(
        id=f"a-{i}",
        request_id=f"req-{i}",
        recipient="+15550100",
        channel=channel,
        state=state,
        provider_name=provider,
        error=error,
        created_at=created,
        failed_at=created + timedelta(seconds=5) if state == DeliveryState.FAILED else None,
    )


def failed(i, error, **kwargs):
    return record(i, DeliveryState.FAILED, error=error, **kwargs)


def test_analyze_failures_groups_by_service_and_category():
    records = [
        failed(1, "Connection reset"),
        failed(2, "Connection refused"),
        failed(3, "ECONNREFUSED"),
        failed(4, "Connection reset"),
        failed(5, "Rate limit exceeded", provider="smtp", channel=EMAIL),
        failed(6, None, provider=None),
        record(7, DeliveryState.DELIVERED),
    ]

    groups = analyze_failures(records)

    assert [(g["service"], g["error_type"], g["count"]) for g in groups] == [
        ("twilio", "network", 4),
        ("smtp", "rate_limit", 1),
        ("unknown", "unknown", 1),
    ]
    assert [e["attempt_id"] for e in groups[0]["examples"]] == ["a-1", "a-2", "a-3"]
    assert groups[1]["examples"][0]["channel"] == "email"


def test_no_alerts_when_quiet():
    assert evaluate_alerts([], now=NOW) == []
    healthy = [record(i, DeliveryState.DELIVERED, minutes_ago=5) for i in range(20)]
    assert evaluate_alerts(healthy, now=NOW) == []


def test_high_failure_rate():
    records = [failed(i, "Network error", provider=f"p{i % 4}") for i in range(7)]
    records += [record(i + 7, DeliveryState.DELIVERED, provider=f"p{i}") for i in range(4)]

    alerts = evaluate_alerts(records, now=NOW)

    assert [(a["type"], a["severity"]) for a in alerts] == [("high_failure_rate", "critical")]
    assert alerts[0]["value"] == 63.64


def test_failure_rate_needs_enough_attempts():
    records = [failed(i, "Network error", provider=f"p{i}") for i in range(10)]
    assert [a["type"] for a in evaluate_alerts(records, now=NOW)] == []


def test_service_degradation():
    records = [failed(i, "503 Service Unavailable", provider="nexmo") for i in range(5)]
    records += [record(5, DeliveryState.SENT, provider="nexmo")]
    records += [record(i + 6, DeliveryState.DELIVERED, provider="twilio") for i in range(10)]

    alerts = evaluate_alerts(records, now=NOW)

    assert [(a["type"], a["service"]) for a in alerts] == [("service_degradation", "nexmo")]
    assert alerts[0]["severity"] == "warning"


def test_no_successful_deliveries_recently():
    records = [record(1, DeliveryState.DELIVERED, minutes_ago=40)]
    records += [failed(2, "Timeout", minutes_ago=10), record(3, DeliveryState.PENDING, minutes_ago=2)]

    alerts = evaluate_alerts(records, now=NOW)

    assert [a["type"] for a in alerts] == ["no_successful_deliveries"]
    assert alerts[0]["value"] == 2


class StubScalars:
    def __init__(self, rows):
        self.rows = rows

    def all(self):
        return self.rows


class StubResult:
    def __init__(self, rows):
        self.rows = rows

    def scalars(self):
        return StubScalars(self.rows)


class StubSession:
    def __init__(self, rows):
        self.rows = rows

    async def execute(self, statement):
        return StubResult(self.rows)


@pytest.fixture
def client_with_records():
    def make(rows):
        async def stub_db():
            yield StubSession(rows)
        app.dependency_overrides[get_db] = stub_db
        return TestClient(app)
    yield make
    app.dependency_overrides.clear()


def test_failures_endpoint(client_with_records):
    client = client_with_records([failed(1, "Connection reset"), failed(2, "Invalid phone number")])

    response = client.get(f"{settings.API_V1_STR}/stats/failures?hours=6")

    assert response.status_code == 200
    data = response.json()
    assert data["window_hours"] == 6
    assert data["total_failures"] == 2
    assert {g["error_type"] for g in data["groups"]} == {"network", "invalid_recipient"}


def test_alerts_endpoint(client_with_records):
    client = client_with_records([])
    response = client.get(f"{settings.API_V1_STR}/stats/alerts")
    assert response.status_code == 200
    assert response.json() == {"alerts": [], "count": 0}
