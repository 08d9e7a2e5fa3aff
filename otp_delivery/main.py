import asyncio
from contextlib import asynccontextmanager, suppress

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from otp_delivery.api.api import api_router
from otp_delivery.core.config import settings
from otp_delivery.core.database import AsyncSessionLocal, Base, engine
from otp_delivery.models.channel import ChannelService, DeliveryChannel, ServiceStatus
from otp_delivery.repositories.delivery_repository import make_recorder
from otp_delivery.services.gateway import CeleryDeliveryGateway
from otp_delivery.services.health import ChannelHealthBoard
from otp_delivery.services.sessions import DeliverySessionManager

# Import models to ensure they are registered with SQLAlchemy metadata
from otp_delivery.models.delivery_record import DeliveryRecord  # noqa: F401

logger = structlog.get_logger(__name__)


def build_session_manager() -> DeliverySessionManager:
    """Wire the session manager with the Celery gateway and, if enabled, persistence."""
    health_board = ChannelHealthBoard()
    if settings.SEED_CHANNEL_HEALTH:
        for channel in DeliveryChannel:
            health_board.update(channel, [
                ChannelService(name=settings.DEFAULT_PROVIDER, channel=channel, status=ServiceStatus.HEALTHY)
            ])
    recorder = make_recorder(AsyncSessionLocal) if settings.PERSIST_DELIVERIES else None
    return DeliverySessionManager(
        gateway=CeleryDeliveryGateway(health_board),
        health_board=health_board,
        recorder=recorder,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables (for development)
    if settings.PERSIST_DELIVERIES:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    sessions = build_session_manager()
    app.state.sessions = sessions
    sweeper = asyncio.create_task(sessions.run_timeout_sweeper())
    logger.info(f"{settings.PROJECT_NAME} started ({settings.ENVIRONMENT})")

    yield

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Tracks verification code deliveries and drives retry with channel fallback",
    version="0.1.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/", tags=["System"])
async def root():
    """Service information."""
    return {
        "service": settings.PROJECT_NAME,
        "version": "0.1.0",
        "status": "operational",
        "documentation": "/docs or /redoc",
    }
