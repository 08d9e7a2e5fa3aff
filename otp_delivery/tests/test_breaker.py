from datetime import timedelta

import pytest

from otp_delivery.models.channel import AggregateStatus, DeliveryChannel, ServiceStatus
from otp_delivery.models.delivery import DeliveryEventType, StatusEvent
from otp_delivery.services.breaker import BreakerState, CircuitBreaker
from otp_delivery.services.health import ChannelHealthBoard
from otp_delivery.services.orchestrator import DeliveryOrchestrator

from conftest import NOW, service

SMS = DeliveryChannel.SMS
EMAIL = DeliveryChannel.EMAIL


def breaker(**overrides):
    options = dict(
        failure_threshold=5, open_seconds=60, half_open_max_attempts=3,
        disable_after=10, disable_seconds=1800, down_disable_after=3, down_disable_seconds=1200,
    )
    options.update(overrides)
    return CircuitBreaker("twilio/sms", **options)


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        b = breaker()
        for _ in range(4):
            b.record_failure(NOW)
        assert b.current_state(NOW) == BreakerState.CLOSED
        assert b.allows(NOW)

        b.record_failure(NOW)
        assert b.current_state(NOW) == BreakerState.OPEN
        assert not b.allows(NOW)

    def test_success_while_closed_decrements(self):
        b = breaker()
        for _ in range(4):
            b.record_failure(NOW)
        b.record_success(NOW)
        b.record_failure(NOW)
        assert b.current_state(NOW) == BreakerState.CLOSED
        assert b.failure_count == 4

    def test_half_open_success_closes(self):
        b = breaker()
        for _ in range(5):
            b.record_failure(NOW)
        later = NOW + timedelta(seconds=60)
        assert b.current_state(later) == BreakerState.HALF_OPEN
        assert b.allows(later)

        b.record_success(later)
        assert b.current_state(later) == BreakerState.CLOSED
        assert b.failure_count == 0

    def test_half_open_failures_reopen(self):
        b = breaker()
        for _ in range(5):
            b.record_failure(NOW)
        later = NOW + timedelta(seconds=61)
        b.record_failure(later)
        b.record_failure(later)
        assert b.current_state(later) == BreakerState.HALF_OPEN
        b.record_failure(later)
        assert b.current_state(later) == BreakerState.OPEN
        assert b.opened_at == later

    def test_long_streak_disables(self):
        b = breaker(failure_threshold=100)
        for _ in range(10):
            b.record_failure(NOW)
        assert b.is_disabled(NOW + timedelta(minutes=29))
        assert not b.allows(NOW + timedelta(minutes=29))
        assert not b.is_disabled(NOW + timedelta(minutes=30))
        assert b.disabled_reason is None

    def test_service_down_disables_sooner(self):
        b = breaker(failure_threshold=100)
        for _ in range(3):
            b.record_failure(NOW, "service_down")
        assert b.is_disabled(NOW + timedelta(minutes=19))
        assert b.to_dict(NOW)["disabled_reason"] == "service down"
        assert not b.is_disabled(NOW + timedelta(minutes=20))

    def test_success_resets_streak(self):
        b = breaker(failure_threshold=100)
        for _ in range(2):
            b.record_failure(NOW, "service_down")
        b.record_success(NOW)
        b.record_failure(NOW, "service_down")
        assert not b.is_disabled(NOW)


class TestOutcomeDrivenHealth:

    @pytest.fixture
    def clock(self):
        class Clock:
            now = NOW

            def __call__(self):
                return self.now
        return Clock()

    @pytest.fixture
    def board(self, clock):
        board = ChannelHealthBoard(channels=[SMS, EMAIL], clock=clock)
        board.update(SMS, [service("twilio", SMS), service("nexmo", SMS)])
        board.update(EMAIL, [service("smtp", EMAIL)])
        return board

    def test_open_breaker_marks_service_down(self, board):
        for _ in range(5):
            board.record_outcome(SMS, "twilio", success=False)

        statuses = {s.name: s.status for s in board.services(SMS)}
        assert statuses == {"twilio": ServiceStatus.DOWN, "nexmo": ServiceStatus.HEALTHY}
        assert board.availability(SMS).aggregate_status == AggregateStatus.LIMITED
        # Feed report is kept as sent
        assert board.reported_services(SMS)[0].status == ServiceStatus.HEALTHY

    def test_half_open_is_degraded_then_recovers(self, board, clock):
        for _ in range(5):
            board.record_outcome(SMS, "twilio", success=False)
        clock.now = NOW + timedelta(seconds=60)
        assert board.services(SMS)[0].status == ServiceStatus.DEGRADED

        board.record_outcome(SMS, "twilio", success=True)
        assert board.services(SMS)[0].status == ServiceStatus.HEALTHY
        assert board.availability(SMS).aggregate_status == AggregateStatus.AVAILABLE

    def test_all_services_tripped_takes_channel_down(self, board):
        for name in ("twilio", "nexmo"):
            for _ in range(5):
                board.record_outcome(SMS, name, success=False)
        assert board.availability(SMS).aggregate_status == AggregateStatus.DOWN
        assert [r["state"] for r in board.breaker_report()] == ["open", "open"]

    @pytest.mark.asyncio
    async def test_orchestrator_failures_trip_breaker(self, recipient, gateway, controller, clock):
        board = ChannelHealthBoard(channels=[SMS, EMAIL], clock=clock)
        board.update(SMS, [service("fake", SMS)])
        board.update(EMAIL, [service("smtp", EMAIL)])

        for i in range(5):
            orchestrator = DeliveryOrchestrator(
                request_id=f"req-{i}", recipient=recipient, message="code", gateway=gateway,
                health_board=board, retry_controller=controller, clock=clock,
            )
            view = await orchestrator.start(channel=SMS)
            await orchestrator.handle_status(StatusEvent(
                attempt_id=view.attempt.id, event=DeliveryEventType.FAILED, error="Connection refused",
            ))

        assert board.availability(SMS).aggregate_status == AggregateStatus.DOWN
        fresh = DeliveryOrchestrator(
            request_id="req-next", recipient=recipient, message="code", gateway=gateway,
            health_board=board, retry_controller=controller, clock=clock,
        )
        assert (await fresh.start()).attempt.channel == EMAIL
