import asyncio
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

import structlog

from otp_delivery.core.config import settings
from otp_delivery.core.exceptions import (
    InvalidTransitionError,
    NoChannelAvailableError,
    RetryNotPermittedError,
    RetryRefusal,
)
from otp_delivery.models.channel import ChannelAvailability, DeliveryChannel
from otp_delivery.models.delivery import DeliveryAttempt, DeliveryState, Recipient, StatusEvent, utcnow
from otp_delivery.models.view import DeliveryViewModel
from otp_delivery.services import status_machine
from otp_delivery.services.gateway import DeliveryGateway
from otp_delivery.services.health import ChannelHealthBoard
from otp_delivery.services.retry import RetryController, categorize_error
from otp_delivery.services.selection import MethodSelectionPolicy

logger = structlog.get_logger(__name__)

Recorder = Callable[[str, Recipient, DeliveryAttempt], Awaitable[None]]


class DeliveryOrchestrator:
    """
    Drives one logical delivery request.

    Inputs are status events and retry intents, outputs are view-model
    snapshots and delivery initiations through the gateway. Every mutation
    is serialized on a per-request lock.
    """

    def __init__(
        self,
        request_id: str,
        recipient: Recipient,
        message: str,
        gateway: DeliveryGateway,
        health_board: ChannelHealthBoard,
        retry_controller: Optional[RetryController] = None,
        selection_policy: Optional[MethodSelectionPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        timeout_for: Callable[[str], float] = settings.timeout_for,
        recorder: Optional[Recorder] = None,
    ):
        self.request_id = request_id
        self.recipient = recipient
        self.message = message
        self.gateway = gateway
        self.health_board = health_board
        self.retry_controller = retry_controller or RetryController()
        self.selection_policy = selection_policy or MethodSelectionPolicy()
        self.clock = clock
        self.timeout_for = timeout_for
        self.recorder = recorder

        self.attempt: Optional[DeliveryAttempt] = None
        self.history: List[DeliveryAttempt] = []
        self.budget = self.retry_controller.new_budget(request_id)
        self._lock = asyncio.Lock()

    def _reachable(self) -> List[ChannelAvailability]:
        return [
            a for a in self.health_board.availabilities()
            if self.recipient.reachable_on(a.channel)
        ]

    async def start(
        self,
        channel: Optional[DeliveryChannel] = None,
        preferred: Optional[DeliveryChannel] = None,
    ) -> DeliveryViewModel:
        """
        Initiate the first attempt of the request.

        Args:
            channel: Explicit channel; must be selectable
            preferred: Preferred channel when none is given explicitly

        Returns:
            DeliveryViewModel: Snapshot with the pending attempt

        Raises:
            NoChannelAvailableError: If no usable channel exists
            InvalidTransitionError: If the request was already started
        """
        async with self._lock:
            if self.attempt is not None:
                raise InvalidTransitionError(self.attempt.id, self.attempt.state.value, "initiate")

            availabilities = self._reachable()
            if channel is None:
                channel = self.selection_policy.default_channel(availabilities, preferred)
            elif channel not in {a.channel for a in self.selection_policy.list_selectable(availabilities)}:
                raise NoChannelAvailableError(f"{channel.label} delivery is currently unavailable")

            self.attempt = await self.gateway.initiate_delivery(self.recipient, channel, self.message)
            self.budget = self.budget.model_copy(update={
                "last_channel": channel,
                "channels_tried": [channel],
            })
            logger.info(f"Request {self.request_id} started on {channel.value}, attempt {self.attempt.id}")
            await self._record()
            return self.snapshot()

    async def handle_status(self, event: StatusEvent) -> DeliveryViewModel:
        """
        Apply a status event to the active attempt.

        Raises:
            InvalidTransitionError: For events on terminal or superseded attempts
        """
        async with self._lock:
            if self.attempt is None or event.attempt_id != self.attempt.id:
                previous = next((a for a in self.history if a.id == event.attempt_id), None)
                state = previous.state.value if previous else "unknown"
                logger.warning(f"Status '{event.event.value}' for inactive attempt {event.attempt_id}")
                raise InvalidTransitionError(event.attempt_id, state, event.event.value)

            previous_state = self.attempt.state
            self.attempt = status_machine.apply(self.attempt, event)
            self._report_outcome(previous_state)
            await self._record()
            return self.snapshot()

    async def retry_same_channel(
        self,
        attempt_id: Optional[str] = None,
        expected_retries: Optional[int] = None,
    ) -> DeliveryViewModel:
        return await self._retry(True, None, attempt_id, expected_retries)

    async def retry_with_channel(
        self,
        channel: DeliveryChannel,
        attempt_id: Optional[str] = None,
        expected_retries: Optional[int] = None,
    ) -> DeliveryViewModel:
        if self.attempt is not None and channel == self.attempt.channel:
            return await self._retry(True, None, attempt_id, expected_retries)
        return await self._retry(False, channel, attempt_id, expected_retries)

    async def _retry(
        self,
        same_channel: bool,
        channel: Optional[DeliveryChannel],
        attempt_id: Optional[str],
        expected_retries: Optional[int],
    ) -> DeliveryViewModel:
        async with self._lock:
            if attempt_id is not None and (self.attempt is None or self.attempt.id != attempt_id):
                raise RetryNotPermittedError(
                    RetryRefusal.CONFLICT, f"Attempt {attempt_id} is no longer the active attempt"
                )
            if self.attempt is None:
                raise RetryNotPermittedError(RetryRefusal.WRONG_STATE)

            budget = self.retry_controller.retry(
                self.attempt,
                self.budget,
                same_channel=same_channel,
                channel=channel,
                availabilities=self._reachable(),
                expected_retries=expected_retries,
                now=self.clock(),
            )
            target = budget.last_channel
            new_attempt = await self.gateway.initiate_delivery(self.recipient, target, self.message)

            self.history.append(self.attempt)
            self.attempt = new_attempt
            self.budget = budget
            await self._record()
            return self.snapshot()

    async def expire(self, now: Optional[datetime] = None) -> bool:
        """Fail the active attempt if it has been quiet for longer than its channel's window."""
        async with self._lock:
            if self.attempt is None:
                return False
            now = now or self.clock()
            timeout = self.timeout_for(self.attempt.channel.value)
            if not status_machine.is_stale(self.attempt, timeout, now):
                return False

            event = status_machine.timeout_event(self.attempt, timeout, now)
            previous_state = self.attempt.state
            self.attempt = status_machine.apply(self.attempt, event)
            logger.warning(f"Attempt {self.attempt.id} of request {self.request_id} timed out after {timeout}s")
            self._report_outcome(previous_state, now)
            await self._record()
            return True

    def _report_outcome(self, previous_state: DeliveryState, now: Optional[datetime] = None) -> None:
        attempt = self.attempt
        if previous_state.is_terminal or not attempt.is_terminal or not attempt.provider_name:
            return
        self.health_board.record_outcome(
            attempt.channel,
            attempt.provider_name,
            success=attempt.state == DeliveryState.DELIVERED,
            category=categorize_error(attempt.error).value if attempt.error else None,
            now=now or self.clock(),
        )

    def settled_at(self) -> Optional[datetime]:
        """When the active attempt reached a terminal state, or None while it is live."""
        attempt = self.attempt
        if attempt is None or not attempt.is_terminal:
            return None
        return attempt.delivered_at or attempt.failed_at

    def attempt_ids(self) -> List[str]:
        ids = [a.id for a in self.history]
        if self.attempt is not None:
            ids.append(self.attempt.id)
        return ids

    def snapshot(self, now: Optional[datetime] = None) -> DeliveryViewModel:
        """Build the current view model. Derived values are recomputed on every call."""
        now = now or self.clock()
        availabilities = self.health_board.availabilities()
        reachable = [a for a in availabilities if self.recipient.reachable_on(a.channel)]
        selectable = self.selection_policy.list_selectable(reachable)
        attempt = self.attempt
        controller = self.retry_controller

        can_retry = controller.can_retry(attempt, self.budget)
        failed = attempt is not None and attempt.state == DeliveryState.FAILED

        return DeliveryViewModel(
            request_id=self.request_id,
            recipient=self.recipient,
            attempt=attempt,
            progress=status_machine.progress(attempt.state) if attempt else 0,
            eta=status_machine.estimate_eta(attempt, now) if attempt else None,
            availabilities=availabilities,
            descriptions=[self.selection_policy.describe(a) for a in availabilities],
            selectable_channels=[a.channel for a in selectable],
            no_channel_available=not selectable,
            can_retry=can_retry,
            retry_refusal=None if can_retry or attempt is None else controller.refusal_reason(attempt, self.budget),
            retry_options=controller.retry_options(attempt, reachable) if failed else [],
            retry_after_seconds=controller.retry_delay(self.budget.retries, randomize=False) if can_retry else None,
            error_category=categorize_error(attempt.error).value if failed else None,
            budget=self.budget,
            history=list(self.history),
        )

    async def _record(self) -> None:
        if self.recorder is None or self.attempt is None:
            return
        try:
            await self.recorder(self.request_id, self.recipient, self.attempt)
        except Exception as e:
            logger.error(f"Failed to record attempt {self.attempt.id}: {str(e)}")
