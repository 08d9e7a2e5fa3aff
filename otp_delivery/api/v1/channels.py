from fastapi import APIRouter, Depends

from otp_delivery.api.deps import get_session_manager
from otp_delivery.models.api import ChannelHealthUpdate, ChannelsResponse
from otp_delivery.models.channel import ChannelAvailability, ChannelService, DeliveryChannel
from otp_delivery.services.sessions import DeliverySessionManager

router = APIRouter()


@router.get("", response_model=ChannelsResponse)
async def list_channels(sessions: DeliverySessionManager = Depends(get_session_manager)):
    """Availability of every channel, with descriptions for a method picker."""
    availabilities = sessions.health_board.availabilities()
    policy = sessions.selection_policy
    selectable = policy.list_selectable(availabilities)
    return ChannelsResponse(
        availabilities=availabilities,
        descriptions=[policy.describe(a) for a in availabilities],
        selectable_channels=[a.channel for a in selectable],
        no_channel_available=not selectable,
    )


@router.put("/{channel}/health", response_model=ChannelAvailability)
async def update_channel_health(
    channel: DeliveryChannel,
    payload: ChannelHealthUpdate,
    sessions: DeliverySessionManager = Depends(get_session_manager),
):
    """Health feed: replace the provider services reported for a channel."""
    services = [
        ChannelService(name=report.name, channel=channel, status=report.status)
        for report in payload.services
    ]
    return sessions.update_health(channel, services)
