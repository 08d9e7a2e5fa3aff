from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from otp_delivery.models.channel import (
    AggregateStatus,
    ChannelAvailability,
    ChannelService,
    DeliveryChannel,
    ServiceStatus,
)
from otp_delivery.models.delivery import utcnow
from otp_delivery.services.breaker import BreakerState, CircuitBreaker

logger = structlog.get_logger(__name__)


def aggregate(
    channel: DeliveryChannel,
    services: Optional[Iterable[ChannelService]],
) -> ChannelAvailability:
    """
    Reduce the services of one channel to a channel availability.

    Services reported for a different channel are ignored. An empty or
    missing list yields a channel that is down.

    Args:
        channel: The channel being aggregated
        services: Provider services backing the channel

    Returns:
        ChannelAvailability: The derived availability
    """
    members = [s for s in (services or ()) if s.channel == channel]
    healthy = sum(1 for s in members if s.status == ServiceStatus.HEALTHY)

    if not members or healthy == 0:
        status = AggregateStatus.DOWN
    elif healthy == len(members):
        status = AggregateStatus.AVAILABLE
    else:
        status = AggregateStatus.LIMITED

    return ChannelAvailability(
        channel=channel,
        label=channel.label,
        available=status != AggregateStatus.DOWN,
        services=members,
        aggregate_status=status,
    )


def aggregate_all(
    services_by_channel: Mapping[DeliveryChannel, Iterable[ChannelService]],
    channels: Optional[Iterable[DeliveryChannel]] = None,
) -> List[ChannelAvailability]:
    """Aggregate every channel, in enum order unless channels are given."""
    return [
        aggregate(channel, services_by_channel.get(channel))
        for channel in (channels or DeliveryChannel)
    ]


class ChannelHealthBoard:
    """
    Latest provider services per channel, as reported by the health feed.

    Delivery outcomes feed a circuit breaker per service. A service whose
    breaker is open or which is disabled counts as down, and a half-open
    one as degraded, whatever the feed last reported. Availabilities are
    recomputed on every read.
    """

    def __init__(
        self,
        channels: Optional[Iterable[DeliveryChannel]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.channels = list(channels or DeliveryChannel)
        self.clock = clock
        self._services: Dict[DeliveryChannel, List[ChannelService]] = {}
        self._breakers: Dict[Tuple[DeliveryChannel, str], CircuitBreaker] = {}

    def update(self, channel: DeliveryChannel, services: Iterable[ChannelService]) -> ChannelAvailability:
        """Replace the service list of a channel and return its new availability."""
        services = [s for s in services if s.channel == channel]
        self._services[channel] = services
        availability = self.availability(channel)
        logger.info(
            f"Channel {channel.value} health updated: {availability.aggregate_status.value} "
            f"({len(services)} services)"
        )
        return availability

    def breaker(self, channel: DeliveryChannel, service_name: str) -> CircuitBreaker:
        key = (channel, service_name)
        if key not in self._breakers:
            self._breakers[key] = CircuitBreaker(f"{service_name}/{channel.value}")
        return self._breakers[key]

    def record_outcome(
        self,
        channel: DeliveryChannel,
        service_name: str,
        success: bool,
        category: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Feed a finished delivery into the breaker of the service that handled it."""
        now = now or self.clock()
        breaker = self.breaker(channel, service_name)
        if success:
            breaker.record_success(now)
        else:
            breaker.record_failure(now, category)

    def _effective(self, service: ChannelService, now: datetime) -> ChannelService:
        breaker = self._breakers.get((service.channel, service.name))
        if breaker is None or service.status == ServiceStatus.DOWN:
            return service
        if not breaker.allows(now):
            return service.model_copy(update={"status": ServiceStatus.DOWN})
        if breaker.current_state(now) == BreakerState.HALF_OPEN and service.status == ServiceStatus.HEALTHY:
            return service.model_copy(update={"status": ServiceStatus.DEGRADED})
        return service

    def services(self, channel: DeliveryChannel) -> List[ChannelService]:
        """Services of a channel with breaker state applied."""
        now = self.clock()
        return [self._effective(s, now) for s in self._services.get(channel, [])]

    def reported_services(self, channel: DeliveryChannel) -> List[ChannelService]:
        return list(self._services.get(channel, []))

    def availability(self, channel: DeliveryChannel) -> ChannelAvailability:
        return aggregate(channel, self.services(channel))

    def availabilities(self) -> List[ChannelAvailability]:
        return [self.availability(channel) for channel in self.channels]

    def breaker_report(self) -> List[Dict[str, Any]]:
        now = self.clock()
        return [
            dict(breaker.to_dict(now), channel=channel.value)
            for (channel, _), breaker in self._breakers.items()
        ]
