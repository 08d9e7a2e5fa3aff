from abc import ABC, abstractmethod
from typing import Optional

import structlog

from otp_delivery.core.config import settings
from otp_delivery.core.exceptions import ValidationException
from otp_delivery.models.channel import DeliveryChannel, ServiceStatus
from otp_delivery.models.delivery import DeliveryAttempt, Recipient
from otp_delivery.providers.registry import ProviderRegistry
from otp_delivery.services import status_machine
from otp_delivery.services.health import ChannelHealthBoard

logger = structlog.get_logger(__name__)


class DeliveryGateway(ABC):
    """
    Starts the actual sending of a code.
    Implementations return the new attempt in the pending state and report
    progress later through the status feed.
    """

    @abstractmethod
    async def initiate_delivery(
        self,
        recipient: Recipient,
        channel: DeliveryChannel,
        message: str,
    ) -> DeliveryAttempt:
        """
        Start delivering a message over a channel.

        Args:
            recipient: Who to deliver to
            channel: The channel to use
            message: The text carrying the verification code

        Returns:
            DeliveryAttempt: The pending attempt
        """
        pass


class CeleryDeliveryGateway(DeliveryGateway):
    """Queues provider sends on the Celery worker."""

    def __init__(self, health_board: ChannelHealthBoard, default_provider: Optional[str] = None):
        self.health_board = health_board
        self.default_provider = default_provider or settings.DEFAULT_PROVIDER

    def resolve_provider(self, channel: DeliveryChannel) -> str:
        """First registered healthy service of the channel, then degraded, then the default."""
        registered = ProviderRegistry.list_providers()
        services = self.health_board.services(channel)
        for wanted in (ServiceStatus.HEALTHY, ServiceStatus.DEGRADED):
            for service in services:
                if service.status == wanted and service.name in registered:
                    return service.name
        return self.default_provider

    async def initiate_delivery(
        self,
        recipient: Recipient,
        channel: DeliveryChannel,
        message: str,
    ) -> DeliveryAttempt:
        from otp_delivery.tasks.delivery_tasks import send_code_task

        address = recipient.address_for(channel)
        if not address:
            raise ValidationException(f"Recipient has no address for {channel.value}")

        provider_id = self.resolve_provider(channel)
        attempt = status_machine.initiate(channel, provider_name=provider_id)
        task = send_code_task.delay(attempt.id, channel.value, address, message, provider_id)  # type: ignore
        logger.info(f"Queued {channel.value} delivery {attempt.id} via {provider_id}, task ID: {task.id}")
        return attempt
