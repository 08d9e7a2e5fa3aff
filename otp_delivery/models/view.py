from typing import List, Optional

from pydantic import BaseModel, Field

from otp_delivery.core.exceptions import RetryRefusal
from otp_delivery.models.channel import ChannelAvailability, ChannelDescription, DeliveryChannel
from otp_delivery.models.delivery import DeliveryAttempt, DeliveryEta, Recipient, RetryBudget


class RetryOption(BaseModel):
    """A retry action the caller may offer."""
    channel: DeliveryChannel
    label: str
    selectable: bool
    same_channel: bool
    recommended: bool = False

    model_config = {"frozen": True}


class DeliveryViewModel(BaseModel):
    """Immutable snapshot of one logical delivery request."""
    request_id: str
    recipient: Recipient
    attempt: Optional[DeliveryAttempt] = None
    progress: int = 0
    eta: Optional[DeliveryEta] = None
    availabilities: List[ChannelAvailability] = Field(default_factory=list)
    descriptions: List[ChannelDescription] = Field(default_factory=list)
    selectable_channels: List[DeliveryChannel] = Field(default_factory=list)
    no_channel_available: bool = False
    can_retry: bool = False
    retry_refusal: Optional[RetryRefusal] = None
    retry_options: List[RetryOption] = Field(default_factory=list)
    retry_after_seconds: Optional[float] = None
    error_category: Optional[str] = None
    budget: RetryBudget
    history: List[DeliveryAttempt] = Field(default_factory=list)

    model_config = {"frozen": True}
