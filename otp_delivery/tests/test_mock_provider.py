import pytest

from otp_delivery.core.exceptions import ProviderNotFoundError
from otp_delivery.models.channel import DeliveryChannel
from otp_delivery.models.responses import ProviderStatus
from otp_delivery.providers import MockProvider, ProviderRegistry


@pytest.mark.asyncio
@pytest.mark.parametrize("channel,address", [
    (DeliveryChannel.SMS, "+1234567890"),
    (DeliveryChannel.EMAIL, "test@example.com"),
    (DeliveryChannel.WHATSAPP, "+1234567890"),
])
async def test_mock_provider_success(channel, address):
    provider = ProviderRegistry.get_provider("mock", {"success_rate": 1.0, "delay_ms": 0, "eta_seconds": 5})

    response = await provider.send(channel, address, "Your code is 123456")

    assert response.success is True
    assert response.status == ProviderStatus.SENT
    assert response.provider_name == "mock"
    assert response.message_id
    assert response.estimated_delivery_seconds == 5
    assert response.provider_response["channel"] == channel.value


@pytest.mark.asyncio
async def test_mock_provider_failure():
    provider = MockProvider({"success_rate": 0.0, "delay_ms": 0})

    response = await provider.send(DeliveryChannel.SMS, "+1234567890", "Your code is 123456")

    assert response.success is False
    assert response.status == ProviderStatus.FAILED
    assert response.provider_name == "MockProvider"
    assert response.error_message == "Mock sms delivery failed: service unavailable"


def test_registry():
    assert {"mock", "msg91"} <= set(ProviderRegistry.list_providers())
    with pytest.raises(ProviderNotFoundError):
        ProviderRegistry.get_provider("carrier-pigeon")


@pytest.mark.asyncio
async def test_mock_provider_confirms_delivery():
    assert MockProvider.confirms_delivery is True
    delivered = await MockProvider({"delivery_rate": 1.0}).check_delivery(DeliveryChannel.SMS, "m-1")
    assert delivered.status == ProviderStatus.DELIVERED
    assert delivered.message_id == "m-1"

    lost = await MockProvider({"delivery_rate": 0.0}).check_delivery(DeliveryChannel.WHATSAPP, "m-2")
    assert lost.status == ProviderStatus.FAILED
    assert lost.error_message == "Mock whatsapp delivery not confirmed by carrier"


@pytest.mark.asyncio
async def test_webhook_providers_do_not_poll():
    provider = ProviderRegistry.get_provider("msg91", {"authkey": "test-key"})
    assert provider.confirms_delivery is False
    assert await provider.check_delivery(DeliveryChannel.EMAIL, "m-1") is None
    await provider.close()
