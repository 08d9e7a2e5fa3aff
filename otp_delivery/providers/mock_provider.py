import asyncio
import uuid
import random
from typing import Dict, Any, Optional

from otp_delivery.models.channel import DeliveryChannel
from otp_delivery.providers.base import DeliveryProvider
from otp_delivery.models.responses import ProviderResponse, ProviderStatus


class MockProvider(DeliveryProvider):
    """
    A mock provider for testing that simulates delivering codes.
    """

    confirms_delivery = True

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the mock provider with configuration.

        Args:
            config: A dictionary with configuration options:
                - success_rate: float between 0 and 1 (default 0.9)
                - delivery_rate: Chance an accepted message is confirmed delivered (default 0.95)
                - delay_ms: Average delay in milliseconds (default 500)
                - eta_seconds: Estimated delivery time reported on success (default 10)
        """
        super().__init__(config)
        self.success_rate = config.get('success_rate', 0.9)
        self.delivery_rate = config.get('delivery_rate', 0.95)
        self.delay_ms = config.get('delay_ms', 500)
        self.eta_seconds = config.get('eta_seconds', 10)

    async def _simulate_sending(self) -> bool:
        # Simulate network delay, +/- 50%
        delay = self.delay_ms * (0.5 + random.random())
        await asyncio.sleep(delay / 1000)
        return random.random() < self.success_rate

    def _create_response(self, success: bool, channel: str) -> ProviderResponse:
        if success:
            return ProviderResponse(
                success=True,
                status=ProviderStatus.SENT,
                provider_name=self.provider_name,
                message_id=str(uuid.uuid4()),
                estimated_delivery_seconds=self.eta_seconds,
                provider_response={"mock": True, "channel": channel}
            )
        return ProviderResponse(
            success=False,
            status=ProviderStatus.FAILED,
            provider_name=self.provider_name,
            error_message=f"Mock {channel} delivery failed: service unavailable",
            provider_response={"mock": True, "channel": channel, "error": "simulated_failure"}
        )

    async def send_sms(self, recipient: str, content: str) -> ProviderResponse:
        success = await self._simulate_sending()
        return self._create_response(success, "sms")

    async def send_email(self, recipient: str, content: str) -> ProviderResponse:
        success = await self._simulate_sending()
        return self._create_response(success, "email")

    async def send_whatsapp(self, recipient: str, content: str) -> ProviderResponse:
        success = await self._simulate_sending()
        return self._create_response(success, "whatsapp")

    async def check_delivery(self, channel: DeliveryChannel, message_id: str) -> Optional[ProviderResponse]:
        if random.random() < self.delivery_rate:
            return ProviderResponse(
                success=True,
                status=ProviderStatus.DELIVERED,
                provider_name=self.provider_name,
                message_id=message_id,
                provider_response={"mock": True, "channel": channel.value}
            )
        return ProviderResponse(
            success=False,
            status=ProviderStatus.FAILED,
            provider_name=self.provider_name,
            message_id=message_id,
            error_message=f"Mock {channel.value} delivery not confirmed by carrier",
            provider_response={"mock": True, "channel": channel.value, "error": "simulated_loss"}
        )
