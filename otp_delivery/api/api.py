from fastapi import APIRouter

from otp_delivery.api.v1.deliveries import router as deliveries_router
from otp_delivery.api.v1.channels import router as channels_router
from otp_delivery.api.v1.health import router as health_router
from otp_delivery.api.v1.msg91_webhooks import router as msg91_router
from otp_delivery.api.v1.stats import router as stats_router

api_router = APIRouter()

api_router.include_router(deliveries_router, prefix="/deliveries", tags=["Deliveries"])
api_router.include_router(channels_router, prefix="/channels", tags=["Channels"])
api_router.include_router(health_router, prefix="/system", tags=["System"])
api_router.include_router(stats_router, prefix="/stats", tags=["Statistics"])
api_router.include_router(msg91_router, prefix="/providers/msg91", tags=["MSG91 Webhooks"])
