import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
import structlog

from otp_delivery.core.celery_app import celery_app
from otp_delivery.core.config import settings
from otp_delivery.core.exceptions import DeliveryException
from otp_delivery.core.provider_stats import provider_stats
from otp_delivery.core.security import sign_payload
from otp_delivery.models.channel import DeliveryChannel
from otp_delivery.models.delivery import DeliveryEventType, StatusEvent, utcnow
from otp_delivery.models.responses import ProviderResponse, ProviderStatus
from otp_delivery.providers import ProviderRegistry

logger = structlog.get_logger(__name__)

# Retry delays in seconds for reporting status back to the API
STATUS_REPORT_RETRY_DELAYS = [2, 5, 15]
MAX_STATUS_REPORT_RETRIES = len(STATUS_REPORT_RETRY_DELAYS)


def build_status_events(
    attempt_id: str,
    response: ProviderResponse,
    now: Optional[datetime] = None,
) -> List[StatusEvent]:
    """Translate a provider response into status feed events."""
    now = now or utcnow()
    if not response.success:
        return [StatusEvent(
            attempt_id=attempt_id,
            event=DeliveryEventType.FAILED,
            provider_name=response.provider_name,
            message_id=response.message_id,
            error=response.error_message,
            occurred_at=now,
        )]

    estimated = None
    if response.estimated_delivery_seconds is not None:
        estimated = now + timedelta(seconds=response.estimated_delivery_seconds)

    events = [StatusEvent(
        attempt_id=attempt_id,
        event=DeliveryEventType.SENT,
        provider_name=response.provider_name,
        message_id=response.message_id,
        estimated_delivery_at=estimated,
        occurred_at=now,
    )]
    if response.status == ProviderStatus.DELIVERED:
        events.append(StatusEvent(
            attempt_id=attempt_id,
            event=DeliveryEventType.DELIVERED,
            provider_name=response.provider_name,
            message_id=response.message_id,
            occurred_at=now,
        ))
    return events


def build_delivery_report_events(
    attempt_id: str,
    response: ProviderResponse,
    now: Optional[datetime] = None,
) -> List[StatusEvent]:
    """Translate a carrier delivery report into a final status event, if it has one."""
    if response.status == ProviderStatus.DELIVERED:
        event = DeliveryEventType.DELIVERED
    elif response.status == ProviderStatus.FAILED:
        event = DeliveryEventType.FAILED
    else:
        return []
    return [StatusEvent(
        attempt_id=attempt_id,
        event=event,
        provider_name=response.provider_name,
        message_id=response.message_id,
        error=response.error_message if event == DeliveryEventType.FAILED else None,
        occurred_at=now or utcnow(),
    )]


def confirmation_delay(events: List[StatusEvent], provider_id: str, now: Optional[datetime] = None) -> Optional[float]:
    """
    Seconds to wait before polling the carrier for the outcome of a send.

    None when the send was not accepted, the provider cannot be polled or
    no delivery estimate was given.
    """
    last = events[-1]
    if last.event != DeliveryEventType.SENT or not last.message_id or last.estimated_delivery_at is None:
        return None
    provider_class = ProviderRegistry.list_providers().get(provider_id)
    if provider_class is None or not provider_class.confirms_delivery:
        return None
    now = now or utcnow()
    return max(0.0, (last.estimated_delivery_at - now).total_seconds())


async def _send_code(
    attempt_id: str,
    channel: str,
    address: str,
    message: str,
    provider_id: str,
) -> List[StatusEvent]:
    try:
        provider = ProviderRegistry.get_provider(provider_id, settings.PROVIDER_CONFIGS.get(provider_id))
    except DeliveryException as e:
        logger.error(f"Cannot load provider {provider_id} for attempt {attempt_id}: {str(e)}")
        return [StatusEvent(
            attempt_id=attempt_id,
            event=DeliveryEventType.FAILED,
            provider_name=provider_id,
            error=f"Provider {provider_id} unavailable: {str(e)}",
            occurred_at=utcnow(),
        )]

    try:
        response = await provider.send(DeliveryChannel(channel), address, message)
    except DeliveryException as e:
        response = ProviderResponse(
            success=False,
            status=ProviderStatus.FAILED,
            provider_name=provider.provider_name,
            error_message=str(e),
        )
    finally:
        await provider.close()

    logger.info(
        f"Provider {response.provider_name} {'accepted' if response.success else 'rejected'} "
        f"{channel} attempt {attempt_id}"
    )
    return build_status_events(attempt_id, response)


async def _confirm_delivery(attempt_id: str, channel: str, provider_id: str, message_id: str) -> List[StatusEvent]:
    try:
        provider = ProviderRegistry.get_provider(provider_id, settings.PROVIDER_CONFIGS.get(provider_id))
    except DeliveryException as e:
        logger.error(f"Cannot load provider {provider_id} to confirm attempt {attempt_id}: {str(e)}")
        return []

    try:
        response = await provider.check_delivery(DeliveryChannel(channel), message_id)
    except DeliveryException as e:
        logger.warning(f"Delivery check for attempt {attempt_id} failed: {str(e)}")
        return []
    finally:
        await provider.close()

    if response is None:
        return []
    logger.info(f"Provider {response.provider_name} reported {response.status.value} for attempt {attempt_id}")
    return build_delivery_report_events(attempt_id, response)


async def post_status_events(
    events: List[Dict[str, Any]],
    client: httpx.AsyncClient,
    callback_url: Optional[str] = None,
) -> int:
    """
    Post serialized status events in order.

    Returns:
        int: How many events were accepted before the first failure
    """
    url = callback_url or settings.STATUS_CALLBACK_URL
    delivered = 0
    for event in events:
        body = json.dumps(event).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Attempt-Id": event["attempt_id"]}
        if settings.STATUS_WEBHOOK_SECRET:
            headers["X-Signature"] = sign_payload(body)
        try:
            response = await client.post(url, content=body, headers=headers)
        except httpx.RequestError as e:
            logger.warning(f"Status report for {event['attempt_id']} failed: {str(e)}")
            return delivered
        # 409 means the attempt moved on already, nothing to retry
        if response.status_code >= 500:
            logger.warning(f"Status report for {event['attempt_id']} got HTTP {response.status_code}")
            return delivered
        if response.status_code >= 400:
            logger.info(f"Status report for {event['attempt_id']} rejected: HTTP {response.status_code}")
        delivered += 1
    return delivered


def _run(coro):
    # Each task gets its own loop to avoid conflicts with the worker
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _report(events: List[Dict[str, Any]]) -> int:
    async with httpx.AsyncClient(timeout=10.0) as client:
        return await post_status_events(events, client)


@celery_app.task(name="report_status_task", bind=True, max_retries=MAX_STATUS_REPORT_RETRIES)
def report_status_task(self, events: List[Dict[str, Any]]):
    """Report status events to the API, retrying the unsent remainder."""
    sent = _run(_report(events))
    remaining = events[sent:]
    if remaining:
        if self.request.retries >= MAX_STATUS_REPORT_RETRIES:
            logger.error(f"Giving up reporting {len(remaining)} status events for {remaining[0]['attempt_id']}")
            return {"reported": sent, "dropped": len(remaining)}
        countdown = STATUS_REPORT_RETRY_DELAYS[min(self.request.retries, len(STATUS_REPORT_RETRY_DELAYS) - 1)]
        raise self.retry(args=[remaining], countdown=countdown)
    return {"reported": sent, "dropped": 0}


@celery_app.task(name="send_code_task", bind=True)
def send_code_task(self, attempt_id: str, channel: str, address: str, message: str, provider_id: str):
    """Send a code through a provider and report the outcome."""
    logger.info(f"Processing {channel} attempt {attempt_id} via {provider_id}, task ID: {self.request.id}")
    events = _run(_send_code(attempt_id, channel, address, message, provider_id))
    try:
        provider_stats.record(provider_id, channel, events[0].event != DeliveryEventType.FAILED)
    except Exception as e:
        logger.warning(f"Failed to record provider stats for {provider_id}: {str(e)}")
    payload = [event.model_dump(mode="json") for event in events]
    report_status_task.delay(payload)  # type: ignore
    delay = confirmation_delay(events, provider_id)
    if delay is not None:
        confirm_delivery_task.apply_async(  # type: ignore
            args=[attempt_id, channel, provider_id, events[-1].message_id], countdown=delay
        )
    return {"attempt_id": attempt_id, "events": [event.event.value for event in events]}


@celery_app.task(name="confirm_delivery_task", bind=True)
def confirm_delivery_task(self, attempt_id: str, channel: str, provider_id: str, message_id: str):
    """Poll the carrier for the final outcome of an accepted send and report it."""
    events = _run(_confirm_delivery(attempt_id, channel, provider_id, message_id))
    if events:
        report_status_task.delay([event.model_dump(mode="json") for event in events])  # type: ignore
    return {"attempt_id": attempt_id, "events": [event.event.value for event in events]}
