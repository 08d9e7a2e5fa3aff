from otp_delivery.providers.registry import ProviderRegistry
from otp_delivery.providers.mock_provider import MockProvider
from otp_delivery.providers.msg91_provider import MSG91Provider

# Register providers
ProviderRegistry.register("mock", MockProvider)
ProviderRegistry.register("msg91", MSG91Provider)
