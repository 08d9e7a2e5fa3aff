import enum
from typing import List, Optional

from pydantic import BaseModel, Field


class DeliveryChannel(str, enum.Enum):
    """Channels a verification code can be delivered over."""
    SMS = "sms"
    EMAIL = "email"
    WHATSAPP = "whatsapp"

    @property
    def label(self) -> str:
        return CHANNEL_LABELS[self]


CHANNEL_LABELS = {
    DeliveryChannel.SMS: "SMS",
    DeliveryChannel.EMAIL: "Email",
    DeliveryChannel.WHATSAPP: "WhatsApp",
}


class ServiceStatus(str, enum.Enum):
    """Health reported for a single provider service."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class AggregateStatus(str, enum.Enum):
    """Channel-level health derived from its services."""
    AVAILABLE = "available"
    LIMITED = "limited"
    DOWN = "down"


class ChannelService(BaseModel):
    """One backing provider service for a channel."""
    name: str = Field(..., description="Provider service name")
    channel: DeliveryChannel
    status: ServiceStatus = ServiceStatus.HEALTHY

    model_config = {"frozen": True}


class ChannelAvailability(BaseModel):
    """Derived availability of one channel. Recomputed, never mutated."""
    channel: DeliveryChannel
    label: str
    available: bool
    services: List[ChannelService] = Field(default_factory=list)
    aggregate_status: AggregateStatus

    model_config = {"frozen": True}

    @property
    def selectable(self) -> bool:
        return bool(self.services) and self.aggregate_status != AggregateStatus.DOWN

    @property
    def primary_service(self) -> Optional[ChannelService]:
        healthy = [s for s in self.services if s.status == ServiceStatus.HEALTHY]
        if healthy:
            return healthy[0]
        return self.services[0] if self.services else None


class ChannelDescription(BaseModel):
    """Human readable description of a channel for a method picker."""
    channel: DeliveryChannel
    label: str
    description: str
