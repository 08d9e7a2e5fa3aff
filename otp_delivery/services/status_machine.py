import math
from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog

from otp_delivery.core.exceptions import InvalidTransitionError
from otp_delivery.models.channel import DeliveryChannel
from otp_delivery.models.delivery import (
    DeliveryAttempt,
    DeliveryEta,
    DeliveryEventType,
    DeliveryState,
    StatusEvent,
    as_utc,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_FAILURE_REASON = "Delivery failed"
DEFAULT_TIMEOUT_REASON = "Delivery timed out"

PROGRESS: Dict[DeliveryState, int] = {
    DeliveryState.PENDING: 10,
    DeliveryState.SENT: 50,
    DeliveryState.DELIVERED: 100,
    DeliveryState.FAILED: 0,
}

# (from state, event) -> to state
TRANSITIONS = {
    (DeliveryState.PENDING, DeliveryEventType.SENT): DeliveryState.SENT,
    (DeliveryState.SENT, DeliveryEventType.DELIVERED): DeliveryState.DELIVERED,
    (DeliveryState.PENDING, DeliveryEventType.FAILED): DeliveryState.FAILED,
    (DeliveryState.SENT, DeliveryEventType.FAILED): DeliveryState.FAILED,
    (DeliveryState.PENDING, DeliveryEventType.TIMEOUT): DeliveryState.FAILED,
    (DeliveryState.SENT, DeliveryEventType.TIMEOUT): DeliveryState.FAILED,
}


def progress(state: DeliveryState) -> int:
    """Progress percentage shown for a state."""
    return PROGRESS[state]


def initiate(
    channel: DeliveryChannel,
    provider_name: Optional[str] = None,
    message_id: Optional[str] = None,
    estimated_delivery_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> DeliveryAttempt:
    """Create a fresh attempt in the pending state."""
    return DeliveryAttempt(
        channel=channel,
        state=DeliveryState.PENDING,
        provider_name=provider_name,
        message_id=message_id,
        created_at=now or utcnow(),
        estimated_delivery_at=estimated_delivery_at,
    )


def apply(attempt: DeliveryAttempt, event: StatusEvent) -> DeliveryAttempt:
    """
    Apply a status event to an attempt.

    A repeated ``sent`` on a sent attempt only refreshes provider metadata.

    Args:
        attempt: The current attempt
        event: The reported progress event

    Returns:
        DeliveryAttempt: The attempt after the transition

    Raises:
        InvalidTransitionError: If the event does not belong to the attempt or
            is not legal in its current state
    """
    if event.attempt_id != attempt.id:
        raise InvalidTransitionError(attempt.id, attempt.state.value, event.event.value)

    metadata = _metadata(attempt, event)

    if attempt.state == DeliveryState.SENT and event.event == DeliveryEventType.SENT:
        return attempt.model_copy(update=metadata)

    target = TRANSITIONS.get((attempt.state, event.event))
    if target is None:
        logger.warning(
            f"Rejected '{event.event.value}' for attempt {attempt.id} in state '{attempt.state.value}'"
        )
        raise InvalidTransitionError(attempt.id, attempt.state.value, event.event.value)

    # Clamp so milestones never precede the previous one.
    at = max(as_utc(event.occurred_at) or utcnow(), attempt.last_activity_at)
    update = dict(metadata, state=target)

    if target == DeliveryState.SENT:
        update["sent_at"] = at
    elif target == DeliveryState.DELIVERED:
        update["delivered_at"] = at
    else:
        default = DEFAULT_TIMEOUT_REASON if event.event == DeliveryEventType.TIMEOUT else DEFAULT_FAILURE_REASON
        update["error"] = (event.error or "").strip() or default
        update["failed_at"] = at

    logger.info(f"Attempt {attempt.id} ({attempt.channel.value}): {attempt.state.value} -> {target.value}")
    return attempt.model_copy(update=update)


def _metadata(attempt: DeliveryAttempt, event: StatusEvent) -> dict:
    update = {}
    if event.provider_name:
        update["provider_name"] = event.provider_name
    if event.message_id:
        update["message_id"] = event.message_id
    if event.estimated_delivery_at:
        update["estimated_delivery_at"] = as_utc(event.estimated_delivery_at)
    return update


def timeout_event(attempt: DeliveryAttempt, timeout_seconds: float, now: Optional[datetime] = None) -> StatusEvent:
    """Build the event that fails an attempt which went quiet."""
    return StatusEvent(
        attempt_id=attempt.id,
        event=DeliveryEventType.TIMEOUT,
        error=f"{DEFAULT_TIMEOUT_REASON}: no status received within {int(timeout_seconds)}s",
        occurred_at=now or utcnow(),
    )


def is_stale(attempt: DeliveryAttempt, timeout_seconds: float, now: Optional[datetime] = None) -> bool:
    """True when a non-terminal attempt has seen no progress within the window."""
    if attempt.is_terminal:
        return False
    now = as_utc(now) or utcnow()
    return now - attempt.last_activity_at >= timedelta(seconds=timeout_seconds)


def estimate_eta(attempt: DeliveryAttempt, now: Optional[datetime] = None) -> Optional[DeliveryEta]:
    """
    Remaining time until the estimated delivery of a live attempt.

    Returns None when there is no estimate or the attempt is terminal, and
    an imminent ETA once the estimate is no longer in the future.
    """
    if attempt.estimated_delivery_at is None or attempt.is_terminal:
        return None

    now = as_utc(now) or utcnow()
    remaining = (attempt.estimated_delivery_at - now).total_seconds()
    if remaining <= 0:
        return DeliveryEta(seconds=0, imminent=True, display="Any moment now")

    seconds = math.ceil(remaining)
    if seconds < 60:
        display = f"{seconds}s"
    else:
        display = f"{math.ceil(seconds / 60)}m"
    return DeliveryEta(seconds=seconds, imminent=False, display=display)
