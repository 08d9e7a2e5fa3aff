from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from datetime import datetime
import structlog

from otp_delivery.api.deps import get_session_manager
from otp_delivery.core.database import get_db
from otp_delivery.models.channel import AggregateStatus
from otp_delivery.services.sessions import DeliverySessionManager

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/health", tags=["System"])
async def health_check(
    db: AsyncSession = Depends(get_db),
    sessions: DeliverySessionManager = Depends(get_session_manager),
):
    """
    Health check endpoint that verifies:
    - Database connectivity
    - Delivery channel availability
    """
    start_time = datetime.now()
    health_info = {
        "status": "healthy",
        "timestamp": start_time.isoformat(),
        "components": {
            "api": {"status": "healthy"},
            "database": {"status": "unknown"},
            "channels": {},
        },
        "active_deliveries": len(sessions.request_ids()),
    }

    try:
        result = await db.execute(text("SELECT 1"))
        if result.scalar() == 1:
            health_info["components"]["database"] = {"status": "healthy"}
        else:
            health_info["components"]["database"] = {"status": "degraded"}
            health_info["status"] = "degraded"
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        health_info["components"]["database"] = {"status": "critical", "message": str(e)}
        health_info["status"] = "critical"

    availabilities = sessions.health_board.availabilities()
    for availability in availabilities:
        health_info["components"]["channels"][availability.channel.value] = {
            "status": availability.aggregate_status.value,
            "services": len(availability.services),
        }
    if health_info["status"] == "healthy" and all(
        a.aggregate_status == AggregateStatus.DOWN for a in availabilities
    ):
        health_info["status"] = "degraded"

    health_info["response_time_ms"] = round((datetime.now() - start_time).total_seconds() * 1000, 2)

    if health_info["status"] == "critical":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=health_info
        )

    return health_info
