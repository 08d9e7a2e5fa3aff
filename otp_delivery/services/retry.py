import enum
import random
import re
from datetime import datetime
from typing import Iterable, List, Optional

import structlog

from otp_delivery.core.config import settings
from otp_delivery.core.exceptions import (
    NoChannelAvailableError,
    RetryNotPermittedError,
    RetryRefusal,
    ValidationException,
)
from otp_delivery.models.channel import ChannelAvailability, DeliveryChannel
from otp_delivery.models.delivery import DeliveryAttempt, DeliveryState, RetryBudget
from otp_delivery.models.view import RetryOption

logger = structlog.get_logger(__name__)


class ErrorCategory(str, enum.Enum):
    """Coarse classification of provider failure reasons."""
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    INVALID_RECIPIENT = "invalid_recipient"
    AUTH_ERROR = "auth_error"
    SERVICE_DOWN = "service_down"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Checked in order, first match wins
ERROR_CATEGORY_PATTERNS = [
    (ErrorCategory.TIMEOUT, re.compile(r"time(d)?.?out|ETIMEDOUT", re.I)),
    (ErrorCategory.NETWORK, re.compile(r"network|connection|ECONNRESET|ECONNREFUSED|ENOTFOUND", re.I)),
    (ErrorCategory.RATE_LIMIT, re.compile(r"rate.?limit|too many requests|429", re.I)),
    (ErrorCategory.INVALID_RECIPIENT, re.compile(r"invalid.?(phone|email|number|recipient)", re.I)),
    (ErrorCategory.AUTH_ERROR, re.compile(r"unauthori[sz]ed|forbidden|401|403", re.I)),
    (ErrorCategory.SERVICE_DOWN, re.compile(r"service.?unavailable|internal.?server.?error|502|503|504", re.I)),
]

RETRYABLE_PATTERNS = [
    re.compile(p, re.I) for p in (
        r"network", r"time(d)?.?out", r"connection", r"temporar", r"rate.?limit",
        r"service.?unavailable", r"internal.?server.?error", r"502|503|504",
        r"ECONNRESET", r"ENOTFOUND", r"ETIMEDOUT", r"ECONNREFUSED",
    )
]

NON_RETRYABLE_PATTERNS = [
    re.compile(p, re.I) for p in (
        r"invalid.?phone", r"invalid.?email", r"invalid.?recipient", r"unauthori[sz]ed",
        r"forbidden", r"not.?found", r"bad.?request", r"\b(400|401|403|404)\b",
    )
]


def categorize_error(error: Optional[str]) -> ErrorCategory:
    """Classify a failure reason for display and retry hints."""
    if not error:
        return ErrorCategory.UNKNOWN
    for category, pattern in ERROR_CATEGORY_PATTERNS:
        if pattern.search(error):
            return category
    return ErrorCategory.UNKNOWN


def is_retryable_error(error: Optional[str]) -> bool:
    """Whether retrying on the same channel is likely to help."""
    if not error:
        return False
    if any(p.search(error) for p in NON_RETRYABLE_PATTERNS):
        return False
    return any(p.search(error) for p in RETRYABLE_PATTERNS)


class RetryController:
    """Decides which retries are legal and keeps the attempt bookkeeping."""

    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        multiplier: Optional[float] = None,
        jitter: Optional[float] = None,
    ):
        self.max_retries = settings.MAX_DELIVERY_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.max_delay = settings.RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay
        self.multiplier = settings.RETRY_BACKOFF_MULTIPLIER if multiplier is None else multiplier
        self.jitter = settings.RETRY_JITTER_FACTOR if jitter is None else jitter

    def new_budget(self, request_id: str, channel: Optional[DeliveryChannel] = None) -> RetryBudget:
        """Budget for a new logical delivery request."""
        return RetryBudget(
            request_id=request_id,
            max_retries=self.max_retries,
            last_channel=channel,
            channels_tried=[channel] if channel else [],
        )

    def can_retry(self, attempt: Optional[DeliveryAttempt], budget: RetryBudget) -> bool:
        return attempt is not None and attempt.state == DeliveryState.FAILED and not budget.exhausted

    def refusal_reason(
        self,
        attempt: Optional[DeliveryAttempt],
        budget: RetryBudget,
        availabilities: Optional[Iterable[ChannelAvailability]] = None,
    ) -> Optional[RetryRefusal]:
        """
        Why no retry is possible right now, or None if one is.

        Args:
            attempt: The current attempt
            budget: The request's retry budget
            availabilities: When given, a retry with no selectable channel is refused

        Returns:
            Optional[RetryRefusal]: The refusal reason
        """
        if attempt is None or attempt.state != DeliveryState.FAILED:
            return RetryRefusal.WRONG_STATE
        if budget.exhausted:
            return RetryRefusal.BUDGET_EXHAUSTED
        if availabilities is not None and not any(a.selectable for a in availabilities):
            return RetryRefusal.NO_CHANNEL
        return None

    def retry_options(
        self,
        attempt: DeliveryAttempt,
        availabilities: Iterable[ChannelAvailability],
    ) -> List[RetryOption]:
        """The same-channel option first, then every other channel."""
        availabilities = list(availabilities)
        by_channel = {a.channel: a for a in availabilities}
        current = by_channel.get(attempt.channel)

        options = [RetryOption(
            channel=attempt.channel,
            label=attempt.channel.label,
            selectable=bool(current and current.selectable),
            same_channel=True,
            recommended=bool(current and current.selectable) and is_retryable_error(attempt.error),
        )]
        for availability in availabilities:
            if availability.channel == attempt.channel:
                continue
            options.append(RetryOption(
                channel=availability.channel,
                label=availability.label,
                selectable=availability.selectable,
                same_channel=False,
                recommended=availability.selectable,
            ))
        return options

    def retry(
        self,
        attempt: DeliveryAttempt,
        budget: RetryBudget,
        same_channel: bool = True,
        channel: Optional[DeliveryChannel] = None,
        availabilities: Iterable[ChannelAvailability] = (),
        expected_retries: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RetryBudget:
        """
        Validate a retry and record it against the budget.

        Args:
            attempt: The failed attempt being retried
            budget: The current budget
            same_channel: Re-issue on the attempt's channel
            channel: Target channel for a fallback retry
            availabilities: Current channel availabilities
            expected_retries: Counter value the caller saw; defaults to the current one

        Returns:
            RetryBudget: The budget with the retry counted

        Raises:
            RetryNotPermittedError: Attempt not failed, budget exhausted or counter moved
            ValidationException: Fallback without a target, or targeting the same channel
            NoChannelAvailableError: The target channel is down
        """
        reason = self.refusal_reason(attempt, budget)
        if reason is not None:
            logger.warning(f"Retry refused for request {budget.request_id}: {reason.value}")
            raise RetryNotPermittedError(reason)

        target = attempt.channel if same_channel else channel
        if target is None:
            raise ValidationException("Fallback retry needs a target channel")
        if not same_channel and target == attempt.channel:
            raise ValidationException(f"Fallback retry must use a channel other than {target.value}")

        by_channel = {a.channel: a for a in availabilities}
        availability = by_channel.get(target)
        if availability is None or not availability.selectable:
            raise NoChannelAvailableError(f"{target.label} delivery is currently unavailable")

        updated = budget.increment(
            target,
            expected_retries=budget.retries if expected_retries is None else expected_retries,
            now=now,
        )
        logger.info(
            f"Retry {updated.retries}/{updated.max_retries} for request {budget.request_id} "
            f"via {target.value} ({'same channel' if same_channel else 'fallback'})"
        )
        return updated

    def retry_delay(self, retries: int, randomize: bool = True) -> float:
        """Suggested wait in seconds before the next same-channel retry."""
        delay = self.base_delay * (self.multiplier ** max(0, retries))
        delay = min(delay, self.max_delay)
        if randomize and self.jitter:
            delay += delay * self.jitter * (random.random() * 2 - 1)
        return max(0.0, round(delay, 2))
