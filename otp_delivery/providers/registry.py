from typing import Dict, Type, Any, Optional
from otp_delivery.providers.base import DeliveryProvider
from otp_delivery.core.exceptions import ProviderNotFoundError


class ProviderRegistry:
    """
    Registry for delivery providers.
    """
    _providers: Dict[str, Type[DeliveryProvider]] = {}

    @classmethod
    def register(cls, provider_id: str, provider_class: Type[DeliveryProvider]) -> None:
        cls._providers[provider_id] = provider_class

    @classmethod
    def get_provider(cls, provider_id: str, config: Optional[Dict[str, Any]] = None) -> DeliveryProvider:
        """
        Get a provider instance by ID.

        Args:
            provider_id: The provider identifier
            config: Configuration for the provider

        Returns:
            DeliveryProvider: An instance of the provider

        Raises:
            ProviderNotFoundError: If the provider is not registered
        """
        if provider_id not in cls._providers:
            raise ProviderNotFoundError(provider_id)

        provider_class = cls._providers[provider_id]
        return provider_class(dict({"name": provider_id}, **(config or {})))

    @classmethod
    def list_providers(cls) -> Dict[str, Type[DeliveryProvider]]:
        return cls._providers.copy()
