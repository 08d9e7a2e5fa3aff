import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from otp_delivery.core.config import settings
from otp_delivery.core.exceptions import DeliveryNotFoundError
from otp_delivery.models.channel import ChannelAvailability, ChannelService, DeliveryChannel
from otp_delivery.models.delivery import DeliveryAttempt, Recipient, StatusEvent, utcnow
from otp_delivery.models.view import DeliveryViewModel
from otp_delivery.services.gateway import DeliveryGateway
from otp_delivery.services.health import ChannelHealthBoard
from otp_delivery.services.orchestrator import DeliveryOrchestrator, Recorder
from otp_delivery.services.retry import RetryController
from otp_delivery.services.selection import MethodSelectionPolicy

logger = structlog.get_logger(__name__)


class DeliverySessionManager:
    """
    Owns the orchestrators of in-flight delivery requests.

    Finished requests stay queryable for ``retention_seconds`` after their
    last attempt settled and are then evicted by the sweeper.
    """

    def __init__(
        self,
        gateway: DeliveryGateway,
        health_board: Optional[ChannelHealthBoard] = None,
        retry_controller: Optional[RetryController] = None,
        selection_policy: Optional[MethodSelectionPolicy] = None,
        recorder: Optional[Recorder] = None,
        clock: Callable[[], datetime] = utcnow,
        retention_seconds: Optional[int] = None,
    ):
        self.gateway = gateway
        self.health_board = health_board or ChannelHealthBoard(clock=clock)
        self.retry_controller = retry_controller or RetryController()
        self.selection_policy = selection_policy or MethodSelectionPolicy()
        self.recorder = recorder
        self.clock = clock
        self.retention_seconds = (
            settings.SESSION_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        )
        self._sessions: Dict[str, DeliveryOrchestrator] = {}
        # attempt id -> request id
        self._attempts: Dict[str, str] = {}

    def create(self, recipient: Recipient, message: str, request_id: Optional[str] = None) -> DeliveryOrchestrator:
        """Register a new logical delivery request with a fresh retry budget."""
        request_id = request_id or uuid.uuid4().hex
        if request_id in self._sessions:
            raise ValueError(f"Delivery request {request_id} already exists")
        orchestrator = DeliveryOrchestrator(
            request_id=request_id,
            recipient=recipient,
            message=message,
            gateway=self.gateway,
            health_board=self.health_board,
            retry_controller=self.retry_controller,
            selection_policy=self.selection_policy,
            clock=self.clock,
            recorder=self.recorder,
        )
        self._sessions[request_id] = orchestrator
        return orchestrator

    async def start(
        self,
        recipient: Recipient,
        message: str,
        channel: Optional[DeliveryChannel] = None,
        preferred: Optional[DeliveryChannel] = None,
        request_id: Optional[str] = None,
    ) -> DeliveryViewModel:
        """Create a request and initiate its first attempt."""
        orchestrator = self.create(recipient, message, request_id)
        try:
            view = await orchestrator.start(channel=channel, preferred=preferred)
        except Exception:
            self._sessions.pop(orchestrator.request_id, None)
            raise
        self._index(orchestrator)
        return view

    def get(self, request_id: str) -> DeliveryOrchestrator:
        orchestrator = self._sessions.get(request_id)
        if orchestrator is None:
            raise DeliveryNotFoundError(request_id)
        return orchestrator

    def _index(self, orchestrator: DeliveryOrchestrator) -> None:
        for attempt_id in orchestrator.attempt_ids():
            self._attempts[attempt_id] = orchestrator.request_id

    def find_by_attempt(self, attempt_id: str) -> DeliveryOrchestrator:
        request_id = self._attempts.get(attempt_id)
        if request_id is not None and request_id in self._sessions:
            return self._sessions[request_id]

        # Retries create attempts behind our back, so fall back to a scan
        for orchestrator in self._sessions.values():
            if attempt_id in orchestrator.attempt_ids():
                self._index(orchestrator)
                return orchestrator
        raise DeliveryNotFoundError(attempt_id)

    def find_attempt_by_message(self, message_id: str) -> Tuple[DeliveryOrchestrator, DeliveryAttempt]:
        """Locate the attempt a provider message id belongs to."""
        for orchestrator in self._sessions.values():
            attempts = list(orchestrator.history)
            if orchestrator.attempt is not None:
                attempts.append(orchestrator.attempt)
            for attempt in reversed(attempts):
                if attempt.message_id == message_id:
                    return orchestrator, attempt
        raise DeliveryNotFoundError(message_id)

    async def route_status(self, event: StatusEvent) -> DeliveryViewModel:
        """Forward a status feed event to the request owning the attempt."""
        return await self.find_by_attempt(event.attempt_id).handle_status(event)

    def update_health(self, channel: DeliveryChannel, services: Iterable[ChannelService]) -> ChannelAvailability:
        return self.health_board.update(channel, services)

    def _forget(self, request_id: str) -> Optional[DeliveryOrchestrator]:
        orchestrator = self._sessions.pop(request_id, None)
        if orchestrator is not None:
            for attempt_id in orchestrator.attempt_ids():
                self._attempts.pop(attempt_id, None)
        return orchestrator

    def discard(self, request_id: str) -> None:
        """Stop tracking a request. Later events for its attempts are rejected."""
        if self._forget(request_id) is None:
            raise DeliveryNotFoundError(request_id)
        logger.info(f"Discarded delivery request {request_id}")

    def request_ids(self) -> List[str]:
        return list(self._sessions)

    async def expire_stale(self, now: Optional[datetime] = None) -> List[str]:
        """Time out every quiet attempt. Returns the affected request ids."""
        now = now or self.clock()
        expired = []
        for orchestrator in list(self._sessions.values()):
            if await orchestrator.expire(now):
                expired.append(orchestrator.request_id)
        return expired

    def evict_settled(self, now: Optional[datetime] = None) -> List[str]:
        """Drop requests whose attempt settled longer than the retention window ago."""
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.retention_seconds)
        evicted = []
        for request_id, orchestrator in list(self._sessions.items()):
            settled_at = orchestrator.settled_at()
            if settled_at is not None and settled_at <= cutoff:
                self._forget(request_id)
                evicted.append(request_id)
        if evicted:
            logger.info(f"Evicted {len(evicted)} settled delivery requests")
        return evicted

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """One sweeper pass: time out quiet attempts, then evict settled requests."""
        now = now or self.clock()
        expired = await self.expire_stale(now)
        self.evict_settled(now)
        return expired

    async def run_timeout_sweeper(self, interval: Optional[float] = None) -> None:
        """Periodically expire stale attempts and evict settled requests until cancelled."""
        interval = interval or settings.TIMEOUT_SWEEP_INTERVAL_SECONDS
        logger.info(f"Timeout sweeper running every {interval}s")
        while True:
            await asyncio.sleep(interval)
            try:
                expired = await self.sweep()
                if expired:
                    logger.info(f"Timed out {len(expired)} deliveries")
            except Exception as e:
                logger.error(f"Timeout sweep failed: {str(e)}")
