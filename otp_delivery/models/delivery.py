import enum
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from otp_delivery.core.exceptions import RetryNotPermittedError, RetryRefusal
from otp_delivery.models.channel import DeliveryChannel


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DeliveryState(str, enum.Enum):
    """Lifecycle states of a single delivery attempt."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.DELIVERED, DeliveryState.FAILED)


class DeliveryEventType(str, enum.Enum):
    """Progress events reported by providers or the timeout sweeper."""
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    TIMEOUT = "timeout"


class Recipient(BaseModel):
    """Addresses a code can be delivered to."""
    phone: Optional[str] = Field(None, description="Phone number with country code")
    email: Optional[str] = Field(None, description="Email address")

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _require_address(self):
        if not self.phone and not self.email:
            raise ValueError("Recipient needs a phone number or an email address")
        return self

    def address_for(self, channel: DeliveryChannel) -> Optional[str]:
        if channel == DeliveryChannel.EMAIL:
            return self.email
        return self.phone

    def reachable_on(self, channel: DeliveryChannel) -> bool:
        return bool(self.address_for(channel))


class DeliveryAttempt(BaseModel):
    """One outbound code-delivery effort over one channel."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    channel: DeliveryChannel
    state: DeliveryState = DeliveryState.PENDING
    provider_name: Optional[str] = None
    message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    estimated_delivery_at: Optional[datetime] = None
    error: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator(
        "created_at", "sent_at", "delivered_at", "failed_at", "estimated_delivery_at"
    )
    @classmethod
    def _normalize_times(cls, value):
        return as_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def last_activity_at(self) -> datetime:
        return self.sent_at or self.created_at


class StatusEvent(BaseModel):
    """A progress report for one attempt from the status feed."""
    attempt_id: str
    event: DeliveryEventType
    provider_name: Optional[str] = None
    message_id: Optional[str] = None
    estimated_delivery_at: Optional[datetime] = None
    error: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @field_validator("estimated_delivery_at", "occurred_at")
    @classmethod
    def _normalize_times(cls, value):
        return as_utc(value)


class RetryBudget(BaseModel):
    """Attempt bookkeeping for one logical delivery request."""
    request_id: str
    retries: int = 0
    max_retries: int = 3
    last_channel: Optional[DeliveryChannel] = None
    channels_tried: List[DeliveryChannel] = Field(default_factory=list)
    last_retry_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def attempts(self) -> int:
        return self.retries + 1

    @property
    def remaining(self) -> int:
        return max(0, self.max_retries - self.retries)

    @property
    def exhausted(self) -> bool:
        return self.retries >= self.max_retries

    def increment(
        self,
        channel: DeliveryChannel,
        expected_retries: int,
        now: Optional[datetime] = None,
    ) -> "RetryBudget":
        """
        Compare-and-increment the retry counter.

        Args:
            channel: Channel the retry is issued on
            expected_retries: Counter value the caller based its decision on

        Returns:
            RetryBudget: A new budget with the retry recorded

        Raises:
            RetryNotPermittedError: If the counter moved or the budget is spent
        """
        if expected_retries != self.retries:
            raise RetryNotPermittedError(
                RetryRefusal.CONFLICT,
                f"Retry counter is {self.retries}, expected {expected_retries}",
            )
        if self.exhausted:
            raise RetryNotPermittedError(RetryRefusal.BUDGET_EXHAUSTED)
        return self.model_copy(update={
            "retries": self.retries + 1,
            "last_channel": channel,
            "channels_tried": [*self.channels_tried, channel],
            "last_retry_at": now or utcnow(),
        })


class DeliveryEta(BaseModel):
    """Remaining time until the provider's estimated delivery."""
    seconds: int
    imminent: bool
    display: str
