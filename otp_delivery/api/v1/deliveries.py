from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from typing import Optional
import structlog

from otp_delivery.api.deps import get_session_manager, to_http_exception
from otp_delivery.core.exceptions import DeliveryException
from otp_delivery.core.security import verify_signature
from otp_delivery.models.api import ErrorResponse, RetryRequest, StartDeliveryRequest
from otp_delivery.models.delivery import StatusEvent
from otp_delivery.models.view import DeliveryViewModel
from otp_delivery.services.sessions import DeliverySessionManager

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("", response_model=DeliveryViewModel, status_code=status.HTTP_201_CREATED)
async def start_delivery(
    payload: StartDeliveryRequest,
    sessions: DeliverySessionManager = Depends(get_session_manager),
):
    """
    Start delivering a verification code.

    - **recipient**: Phone number and/or email address
    - **message**: Text carrying the code
    - **channel** (optional): Channel to use; the best selectable channel otherwise
    - **preferred_channel** (optional): Used when picking automatically
    """
    try:
        return await sessions.start(
            recipient=payload.recipient,
            message=payload.message,
            channel=payload.channel,
            preferred=payload.preferred_channel,
            request_id=payload.request_id,
        )
    except DeliveryException as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=ErrorResponse(message=str(e), code="duplicate-request").model_dump(),
        )


@router.post("/status", response_model=DeliveryViewModel)
async def report_status(
    request: Request,
    x_signature: Optional[str] = Header(None),
    sessions: DeliverySessionManager = Depends(get_session_manager),
):
    """Status feed: providers and workers report attempt progress here."""
    body = await request.body()
    if not verify_signature(body, x_signature):
        logger.warning("Rejected status report with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        event = StatusEvent.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors())

    try:
        return await sessions.route_status(event)
    except DeliveryException as e:
        raise to_http_exception(e)


@router.get("/{request_id}", response_model=DeliveryViewModel)
async def get_delivery(
    request_id: str,
    sessions: DeliverySessionManager = Depends(get_session_manager),
):
    """Current view of a delivery request."""
    try:
        return sessions.get(request_id).snapshot()
    except DeliveryException as e:
        raise to_http_exception(e)


@router.post("/{request_id}/retry", response_model=DeliveryViewModel)
async def retry_delivery(
    request_id: str,
    payload: RetryRequest,
    sessions: DeliverySessionManager = Depends(get_session_manager),
):
    """
    Retry a failed delivery.

    - **channel** (optional): Fallback channel; the failed channel is reused if omitted
    - **attempt_id** (optional): The attempt being retried
    - **expected_retries** (optional): Retry counter seen by the caller
    """
    try:
        orchestrator = sessions.get(request_id)
        if payload.channel is None:
            return await orchestrator.retry_same_channel(payload.attempt_id, payload.expected_retries)
        return await orchestrator.retry_with_channel(payload.channel, payload.attempt_id, payload.expected_retries)
    except DeliveryException as e:
        raise to_http_exception(e)


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_delivery(
    request_id: str,
    sessions: DeliverySessionManager = Depends(get_session_manager),
):
    """Stop tracking a delivery request."""
    try:
        sessions.discard(request_id)
    except DeliveryException as e:
        raise to_http_exception(e)
