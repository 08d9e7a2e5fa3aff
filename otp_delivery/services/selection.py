from typing import Iterable, List, Optional

from otp_delivery.core.exceptions import NoChannelAvailableError
from otp_delivery.models.channel import (
    AggregateStatus,
    ChannelAvailability,
    ChannelDescription,
    DeliveryChannel,
)


class MethodSelectionPolicy:
    """Decides which channels a user may pick. Holds no selection state."""

    def list_selectable(self, availabilities: Iterable[ChannelAvailability]) -> List[ChannelAvailability]:
        """Channels with at least one service that are not down, in input order."""
        return [a for a in availabilities if a.selectable]

    def require_selectable(self, availabilities: Iterable[ChannelAvailability]) -> List[ChannelAvailability]:
        """
        Like list_selectable, but an empty result is an error.

        Raises:
            NoChannelAvailableError: If every channel is down or has no services
        """
        selectable = self.list_selectable(availabilities)
        if not selectable:
            raise NoChannelAvailableError(
                "All delivery services are currently unavailable. Please try again later."
            )
        return selectable

    def default_channel(
        self,
        availabilities: Iterable[ChannelAvailability],
        preferred: Optional[DeliveryChannel] = None,
    ) -> DeliveryChannel:
        """
        Pick the channel to use when the caller did not choose one.

        The preferred channel wins if selectable, then the first fully
        available channel, then the first limited one.
        """
        selectable = self.require_selectable(availabilities)
        if preferred is not None:
            for availability in selectable:
                if availability.channel == preferred:
                    return preferred
        for availability in selectable:
            if availability.aggregate_status == AggregateStatus.AVAILABLE:
                return availability.channel
        return selectable[0].channel

    def describe(self, availability: ChannelAvailability) -> ChannelDescription:
        label = availability.label
        if not availability.selectable:
            description = f"{label} delivery is currently unavailable"
        else:
            primary = availability.primary_service
            description = f"Send verification code via {label} using {primary.name}"
        return ChannelDescription(channel=availability.channel, label=label, description=description)
