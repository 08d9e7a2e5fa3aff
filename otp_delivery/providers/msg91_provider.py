import httpx
import structlog
import asyncio
from typing import Dict, Any, Optional

from otp_delivery.providers.base import DeliveryProvider
from otp_delivery.models.responses import ProviderResponse, ProviderStatus
from otp_delivery.core.exceptions import ProviderException, ValidationException

logger = structlog.get_logger(__name__)


class MSG91Provider(DeliveryProvider):
    """Delivers codes through the MSG91 flow and email APIs."""

    BASE_URL = "https://control.msg91.com/api/v5"

    SMS_API_URL = f"{BASE_URL}/flow/"
    EMAIL_API_URL = f"{BASE_URL}/email/send"
    WHATSAPP_API_URL = f"{BASE_URL}/whatsapp/flow"

    DEFAULT_DOMAIN = "mailer91.com"

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the MSG91 provider with configuration.

        Args:
            config: Dictionary with configuration options:
                - authkey: MSG91 auth key (required)
                - sender_id: Sender ID for SMS messages
                - sms_flow_id: Flow used for SMS codes
                - whatsapp_flow_id: Flow used for WhatsApp codes
                - email_template_id: Template used for email codes
                - email_domain: Domain for DKIM signing
                - from_default / from_default_name: Email sender
                - max_retries: Maximum number of attempts per request (default: 3)
                - base_retry_delay: Base delay for retry backoff in seconds (default: 1.0)
                - eta_seconds: Estimated delivery time reported on acceptance
                - transport: Optional httpx transport
        """
        self.http_client: Optional[httpx.AsyncClient] = None
        super().__init__(config)
        self.max_retries = config.get('max_retries', 3)
        self.base_retry_delay = config.get('base_retry_delay', 1.0)
        self.eta_seconds = config.get('eta_seconds')

    def initialize_provider(self) -> None:
        """
        Initialize and validate the provider configuration.
        """
        self.api_key = self.config.get('authkey')
        if not self.api_key:
            raise ValidationException("MSG91 auth key not provided in config")

        self.sender_id = self.config.get('sender_id')
        if not self.sender_id:
            logger.warning("MSG91 sender ID not provided, using default")
            self.sender_id = "VERIFY"

        self.email_domain = self.config.get('email_domain', self.DEFAULT_DOMAIN)
        self.email_from = self.config.get('from_default', f"no-reply@{self.email_domain}")
        self.email_from_name = self.config.get('from_default_name', 'Verification')

        if self.http_client is None:
            self.http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "authkey": self.api_key,  # MSG91 uses "authkey" header
                },
                transport=self.config.get('transport'),
            )

    async def send_sms(self, recipient: str, content: str) -> ProviderResponse:
        payload = {
            "flow_id": self.config.get('sms_flow_id', ''),
            "sender": self.sender_id,
            "mobiles": recipient,
            "VAR1": content,  # Flow template with VAR1 for content
        }
        return await self._send("sms", self.SMS_API_URL, payload)

    async def send_email(self, recipient: str, content: str) -> ProviderResponse:
        payload = {
            "recipients": [{"to": [{"email": recipient}], "variables": {"content": content}}],
            "from": {"email": self.email_from, "name": self.email_from_name},
            "domain": self.email_domain,
            "template_id": self.config.get('email_template_id', ''),
        }
        return await self._send("email", self.EMAIL_API_URL, payload)

    async def send_whatsapp(self, recipient: str, content: str) -> ProviderResponse:
        flow_id = self.config.get('whatsapp_flow_id')
        if not flow_id:
            raise ValidationException("Flow ID is required for WhatsApp messages")
        payload = {
            "flow_id": flow_id,
            "mobile": recipient,
            "VAR1": content,
        }
        return await self._send("whatsapp", self.WHATSAPP_API_URL, payload)

    async def _send(self, channel: str, url: str, payload: Dict[str, Any]) -> ProviderResponse:
        response_data: Dict[str, Any] = {"provider_id": "msg91", "channel": channel}
        try:
            response = await self._make_request_with_retry(url, payload)
        except ProviderException as e:
            logger.error(f"Error sending {channel} via MSG91: {str(e)}")
            return ProviderResponse(
                success=False,
                status=ProviderStatus.FAILED,
                provider_name=self.provider_name,
                error_message=e.message,
                provider_response=dict(response_data, error=e.message),
            )

        response_data["raw_response"] = response
        if response.get('status') == "success" or response.get('type') == "success":
            data = response.get('data') or {}
            return ProviderResponse(
                success=True,
                status=ProviderStatus.SENT,
                provider_name=self.provider_name,
                message_id=data.get('id') or data.get('unique_id') or response.get('request_id'),
                estimated_delivery_seconds=self.eta_seconds,
                provider_response=response_data,
            )
        return ProviderResponse(
            success=False,
            status=ProviderStatus.FAILED,
            provider_name=self.provider_name,
            error_message=response.get('message') or "Unknown MSG91 error",
            provider_response=response_data,
        )

    async def _make_request_with_retry(self, url: str, json_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST with exponential backoff. Client errors other than 429 are not retried.

        Raises:
            ProviderException: When every attempt failed
        """
        if self.http_client is None:
            self.initialize_provider()
        assert self.http_client is not None, "HTTP client not initialized"

        attempt = 0
        last_error = "no attempt made"

        while attempt < self.max_retries:
            if attempt > 0:
                delay = self.base_retry_delay * (2 ** (attempt - 1))
                await asyncio.sleep(delay)
                logger.info(f"Retrying MSG91 request attempt {attempt + 1}/{self.max_retries}")
            attempt += 1

            try:
                response = await self.http_client.post(url, json=json_data)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                last_error = f"HTTP {e.response.status_code}: {e.response.text}"
                logger.warning(f"MSG91 API HTTP error: {last_error}")
                if e.response.status_code < 500 and e.response.status_code != 429:
                    break
            except httpx.RequestError as e:
                last_error = f"network error: {str(e)}"
                logger.warning(f"MSG91 API request failed: {str(e)}")

        raise ProviderException(
            "MSG91", f"Request failed after {attempt} attempts: {last_error}"
        )

    async def close(self) -> None:
        if self.http_client:
            try:
                await self.http_client.aclose()
            finally:
                self.http_client = None
