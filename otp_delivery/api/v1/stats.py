"""
Delivery statistics API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List
import structlog

from otp_delivery.api.deps import get_session_manager
from otp_delivery.core.database import get_db
from otp_delivery.core.provider_stats import provider_stats
from otp_delivery.repositories.delivery_repository import DeliveryRepository
from otp_delivery.services.sessions import DeliverySessionManager

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/deliveries")
async def get_delivery_stats(
    hours: int = Query(24, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Delivery totals, success rate and average delivery time over the last hours."""
    try:
        return await DeliveryRepository(db).get_stats(hours)
    except Exception as e:
        logger.error(f"Failed to compute delivery stats: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/failures")
async def get_failure_analysis(
    hours: int = Query(24, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Failed attempts grouped by service and error category, largest group first."""
    try:
        return await DeliveryRepository(db).get_failure_analysis(hours)
    except Exception as e:
        logger.error(f"Failed to analyze delivery failures: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/alerts")
async def get_alerts(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    """Alert conditions raised by the deliveries of the last hour."""
    try:
        alerts = await DeliveryRepository(db).get_alert_conditions()
    except Exception as e:
        logger.error(f"Failed to evaluate alerts: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"alerts": alerts, "count": len(alerts)}


@router.get("/breakers")
async def get_breakers(sessions: DeliverySessionManager = Depends(get_session_manager)) -> List[Dict[str, Any]]:
    """Circuit breaker state of every service that has reported an outcome."""
    return sessions.health_board.breaker_report()


@router.get("/deliveries/{request_id}")
async def get_request_history(request_id: str, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    """Every recorded attempt of a delivery request, oldest first."""
    records = await DeliveryRepository(db).list_for_request(request_id)
    if not records:
        raise HTTPException(status_code=404, detail=f"No records for delivery '{request_id}'")
    return {
        "request_id": request_id,
        "attempts": [
            {
                "id": record.id,
                "channel": record.channel.value,
                "state": record.state.value,
                "provider_name": record.provider_name,
                "message_id": record.message_id,
                "error": record.error,
                "created_at": record.created_at.isoformat(),
                "sent_at": record.sent_at.isoformat() if record.sent_at is not None else None,
                "delivered_at": record.delivered_at.isoformat() if record.delivered_at is not None else None,
                "failed_at": record.failed_at.isoformat() if record.failed_at is not None else None,
            }
            for record in records
        ],
    }


@router.get("/providers/{provider_name}")
async def get_provider_stats(provider_name: str) -> Dict[str, Any]:
    """Accepted and rejected sends of a provider, per channel"""
    try:
        return {
            "provider": provider_name,
            "statistics": provider_stats.get_stats(provider_name),
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/providers/{provider_name}/reset")
async def reset_provider_stats(provider_name: str) -> Dict[str, str]:
    try:
        provider_stats.reset_stats(provider_name)
        return {"message": f"Statistics reset for provider {provider_name}"}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
