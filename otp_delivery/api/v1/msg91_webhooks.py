from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from typing import Any, Dict, List, Optional
import json
import structlog

from otp_delivery.api.deps import get_session_manager
from otp_delivery.core.config import settings
from otp_delivery.core.exceptions import DeliveryException, DeliveryNotFoundError
from otp_delivery.core.security import verify_signature
from otp_delivery.models.delivery import DeliveryEventType, StatusEvent, utcnow
from otp_delivery.services.sessions import DeliverySessionManager

logger = structlog.get_logger(__name__)

router = APIRouter()

# MSG91 report events that settle a delivery; the rest are informational
EVENT_MAPPING = {
    "delivered": DeliveryEventType.DELIVERED,
    "bounced": DeliveryEventType.FAILED,
    "failed": DeliveryEventType.FAILED,
    "rejected": DeliveryEventType.FAILED,
}


def extract_message_ids(payload: Dict[str, Any]) -> List[str]:
    """Every id MSG91 may have handed out for the message, most specific first."""
    data = payload.get("data") or {}
    outbound = data.get("outbound_email") or {}
    candidates = [
        outbound.get("unique_id"),
        outbound.get("message_id"),
        outbound.get("id"),
        payload.get("request_id"),
        payload.get("requestId"),
    ]
    return [str(c) for c in candidates if c]


def extract_event(payload: Dict[str, Any]) -> str:
    data = payload.get("data") or {}
    title = (data.get("event") or {}).get("title") or payload.get("status") or ""
    return str(title).lower()


def extract_reason(payload: Dict[str, Any]) -> Optional[str]:
    data = payload.get("data") or {}
    reason = ((data.get("recipient") or {}).get("meta") or {}).get("reason") or data.get("reason")
    return str(reason) if reason else None


@router.post("/webhook")
async def receive_msg91_webhook(
    request: Request,
    x_msg91_signature: Optional[str] = Header(None, alias="X-MSG91-Signature"),
    sessions: DeliverySessionManager = Depends(get_session_manager),
):
    """
    Receive MSG91 delivery reports.

    Delivered reports complete the matching attempt, bounced, failed and
    rejected reports fail it. Queued, sent, opened and clicked reports are
    acknowledged and ignored.
    """
    body = await request.body()

    webhook_secret = settings.MSG91_WEBHOOK_SECRET
    if webhook_secret and not verify_signature(body, x_msg91_signature, webhook_secret):
        logger.warning("Invalid MSG91 webhook signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid webhook payload")

    event_title = extract_event(payload)
    message_ids = extract_message_ids(payload)
    logger.info(f"Received MSG91 webhook '{event_title}' for {message_ids}")

    event_type = EVENT_MAPPING.get(event_title)
    if event_type is None:
        return {"status": "success", "message": f"Event '{event_title}' ignored"}

    for message_id in message_ids:
        try:
            orchestrator, attempt = sessions.find_attempt_by_message(message_id)
        except DeliveryNotFoundError:
            continue

        event = StatusEvent(
            attempt_id=attempt.id,
            event=event_type,
            provider_name="msg91",
            message_id=message_id,
            error=extract_reason(payload) if event_type == DeliveryEventType.FAILED else None,
            occurred_at=utcnow(),
        )
        try:
            view = await orchestrator.handle_status(event)
        except DeliveryException as e:
            logger.warning(f"MSG91 report for attempt {attempt.id} not applied: {str(e)}")
            return {"status": "warning", "message": str(e)}
        return {
            "status": "success",
            "message": f"Attempt {attempt.id} is {view.attempt.state.value}",
            "request_id": orchestrator.request_id,
        }

    logger.warning(f"No delivery attempt found for MSG91 ids {message_ids}")
    return {"status": "warning", "message": "Delivery attempt not found"}
