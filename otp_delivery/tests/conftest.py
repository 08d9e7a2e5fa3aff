import asyncio
from datetime import datetime, timezone
from typing import List, Tuple

import pytest

from otp_delivery.models.channel import ChannelService, DeliveryChannel, ServiceStatus
from otp_delivery.models.delivery import DeliveryAttempt, Recipient
from otp_delivery.services import status_machine
from otp_delivery.services.gateway import DeliveryGateway
from otp_delivery.services.health import ChannelHealthBoard
from otp_delivery.services.orchestrator import DeliveryOrchestrator
from otp_delivery.services.retry import RetryController

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeGateway(DeliveryGateway):
    """Records initiations and hands back pending attempts."""

    def __init__(self):
        self.calls: List[Tuple[Recipient, DeliveryChannel, str]] = []

    async def initiate_delivery(self, recipient, channel, message) -> DeliveryAttempt:
        # Yield so concurrent callers interleave
        await asyncio.sleep(0)
        self.calls.append((recipient, channel, message))
        return status_machine.initiate(channel, provider_name="fake")


def service(name: str, channel: DeliveryChannel, status: ServiceStatus = ServiceStatus.HEALTHY) -> ChannelService:
    return ChannelService(name=name, channel=channel, status=status)


@pytest.fixture
def recipient() -> Recipient:
    return Recipient(phone="+15550100", email="user@example.com")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def health_board() -> ChannelHealthBoard:
    board = ChannelHealthBoard(channels=[DeliveryChannel.SMS, DeliveryChannel.EMAIL])
    board.update(DeliveryChannel.SMS, [service("twilio", DeliveryChannel.SMS)])
    board.update(DeliveryChannel.EMAIL, [service("smtp", DeliveryChannel.EMAIL)])
    return board


@pytest.fixture
def controller() -> RetryController:
    return RetryController(max_retries=3, base_delay=5.0, max_delay=60.0, multiplier=2.0, jitter=0.0)


@pytest.fixture
def orchestrator(recipient, gateway, health_board, controller) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(
        request_id="req-1",
        recipient=recipient,
        message="Your code is 123456",
        gateway=gateway,
        health_board=health_board,
        retry_controller=controller,
        timeout_for=lambda channel: 30,
    )
