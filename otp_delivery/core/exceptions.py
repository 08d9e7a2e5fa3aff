import enum
from typing import Optional


class DeliveryException(Exception):
    """Base exception for all delivery related errors."""
    code = "delivery-error"


class InvalidTransitionError(DeliveryException):
    """Raised when a status event cannot be applied to an attempt."""
    code = "invalid-transition"

    def __init__(self, attempt_id: str, state: str, event: str):
        self.attempt_id = attempt_id
        self.state = state
        self.event = event
        super().__init__(f"Cannot apply '{event}' to attempt {attempt_id} in state '{state}'")


class RetryRefusal(str, enum.Enum):
    """Why a retry was refused."""
    WRONG_STATE = "wrong-state"
    BUDGET_EXHAUSTED = "budget-exhausted"
    NO_CHANNEL = "no-channel-available"
    CONFLICT = "conflict"


class RetryNotPermittedError(DeliveryException):
    """Raised when a retry is requested but is not currently legal."""
    code = "retry-not-permitted"

    def __init__(self, reason: RetryRefusal, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or f"Retry not permitted: {reason.value}")


class NoChannelAvailableError(DeliveryException):
    """Raised when no delivery channel can be selected."""
    code = "no-channel-available"

    def __init__(self, message: str = "No delivery channel available"):
        super().__init__(message)


class DeliveryNotFoundError(DeliveryException):
    """Raised when a delivery request or attempt is not known."""
    code = "not-found"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Delivery '{key}' not found")


class ValidationException(DeliveryException):
    """Exception raised for request validation errors."""
    code = "validation-error"


class ProviderException(DeliveryException):
    """Exception raised for errors in the provider."""
    code = "provider-error"

    def __init__(self, provider_name: str, message: str):
        self.provider_name = provider_name
        self.message = message
        super().__init__(f"Provider {provider_name}: {message}")


class ProviderNotFoundError(DeliveryException):
    """Exception raised when a provider is not found."""
    code = "provider-not-found"

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Provider '{provider_id}' not found")
