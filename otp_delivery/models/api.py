from pydantic import BaseModel, Field
from typing import List, Optional

from otp_delivery.models.channel import (
    ChannelAvailability,
    ChannelDescription,
    DeliveryChannel,
    ServiceStatus,
)
from otp_delivery.models.delivery import Recipient


class StartDeliveryRequest(BaseModel):
    """Start delivering a verification code."""
    recipient: Recipient
    message: str = Field(..., min_length=1, description="Text carrying the verification code")
    channel: Optional[DeliveryChannel] = Field(None, description="Channel to use; picked automatically if omitted")
    preferred_channel: Optional[DeliveryChannel] = Field(None, description="Preferred channel when picking automatically")
    request_id: Optional[str] = Field(None, max_length=64, description="Caller supplied request id")


class RetryRequest(BaseModel):
    """Retry a failed delivery. Without a channel the failed channel is reused."""
    channel: Optional[DeliveryChannel] = None
    attempt_id: Optional[str] = Field(None, description="Attempt being retried, guards against double submits")
    expected_retries: Optional[int] = Field(None, ge=0, description="Retry counter the caller saw")


class ServiceReport(BaseModel):
    name: str
    status: ServiceStatus


class ChannelHealthUpdate(BaseModel):
    """Health feed entry for one channel."""
    services: List[ServiceReport] = Field(default_factory=list)


class ChannelsResponse(BaseModel):
    availabilities: List[ChannelAvailability]
    descriptions: List[ChannelDescription]
    selectable_channels: List[DeliveryChannel]
    no_channel_available: bool


class ErrorResponse(BaseModel):
    """Standard error response model."""
    message: str
    code: str
    reason: Optional[str] = None
