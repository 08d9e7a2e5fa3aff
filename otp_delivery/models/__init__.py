# Models module initialization
from .channel import (
    AggregateStatus,
    ChannelAvailability,
    ChannelDescription,
    ChannelService,
    DeliveryChannel,
    ServiceStatus,
)
from .delivery import (
    DeliveryAttempt,
    DeliveryEta,
    DeliveryEventType,
    DeliveryState,
    Recipient,
    RetryBudget,
    StatusEvent,
)
from .view import DeliveryViewModel, RetryOption

__all__ = [
    "AggregateStatus", "ChannelAvailability", "ChannelDescription", "ChannelService",
    "DeliveryChannel", "ServiceStatus",
    "DeliveryAttempt", "DeliveryEta", "DeliveryEventType", "DeliveryState",
    "Recipient", "RetryBudget", "StatusEvent",
    "DeliveryViewModel", "RetryOption",
]
