from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from otp_delivery.models.channel import DeliveryChannel
from otp_delivery.models.responses import ProviderResponse


class DeliveryProvider(ABC):
    """
    Abstract base class for all code delivery providers.
    Any concrete provider must implement these methods.
    """

    # Whether check_delivery polls the carrier for a final outcome
    confirms_delivery = False

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the provider with configuration.

        Args:
            config: Provider-specific configuration
        """
        self.config = config
        self.provider_name = config.get("name", self.__class__.__name__)
        self.initialize_provider()

    def initialize_provider(self) -> None:
        """
        Initialize any connections or resources needed by the provider.
        Override this method if needed in concrete providers.
        """
        pass

    @abstractmethod
    async def send_sms(self, recipient: str, content: str) -> ProviderResponse:
        """
        Send a code by SMS.

        Args:
            recipient: Phone number of the recipient
            content: Message text

        Returns:
            ProviderResponse: The result of the operation
        """
        pass

    @abstractmethod
    async def send_email(self, recipient: str, content: str) -> ProviderResponse:
        """
        Send a code by email.

        Args:
            recipient: Email address of the recipient
            content: Message text

        Returns:
            ProviderResponse: The result of the operation
        """
        pass

    @abstractmethod
    async def send_whatsapp(self, recipient: str, content: str) -> ProviderResponse:
        """
        Send a code by WhatsApp.

        Args:
            recipient: Phone number of the recipient with country code
            content: Message text

        Returns:
            ProviderResponse: The result of the operation
        """
        pass

    async def send(self, channel: DeliveryChannel, recipient: str, content: str) -> ProviderResponse:
        """Dispatch to the send method of a channel."""
        if channel == DeliveryChannel.SMS:
            return await self.send_sms(recipient, content)
        if channel == DeliveryChannel.EMAIL:
            return await self.send_email(recipient, content)
        if channel == DeliveryChannel.WHATSAPP:
            return await self.send_whatsapp(recipient, content)
        raise ValueError(f"Unsupported channel: {channel}")

    async def check_delivery(self, channel: DeliveryChannel, message_id: str) -> Optional[ProviderResponse]:
        """
        Ask the carrier whether a sent message reached the recipient.

        Providers that push delivery reports through a webhook return None.

        Args:
            channel: Channel the message went out on
            message_id: Provider message id returned by the send

        Returns:
            Optional[ProviderResponse]: DELIVERED or FAILED response, or None
        """
        return None

    async def close(self) -> None:
        """
        Close any connections or resources.
        Override this method if needed in concrete providers.
        """
        pass
