import enum
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from otp_delivery.core.config import settings

logger = structlog.get_logger(__name__)


class BreakerState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Outcome driven health of one provider service on one channel.

    Failures open the breaker after ``failure_threshold`` strikes. An open
    breaker moves to half-open once ``open_seconds`` have passed; a success
    there closes it, while ``half_open_max_attempts`` failures reopen it.
    Long failure streaks disable the service outright for a while.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        open_seconds: Optional[int] = None,
        half_open_max_attempts: Optional[int] = None,
        disable_after: Optional[int] = None,
        disable_seconds: Optional[int] = None,
        down_disable_after: Optional[int] = None,
        down_disable_seconds: Optional[int] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or settings.BREAKER_FAILURE_THRESHOLD
        self.open_seconds = open_seconds or settings.BREAKER_OPEN_SECONDS
        self.half_open_max_attempts = half_open_max_attempts or settings.BREAKER_HALF_OPEN_MAX_ATTEMPTS
        self.disable_after = disable_after or settings.SERVICE_DISABLE_AFTER_FAILURES
        self.disable_seconds = disable_seconds or settings.SERVICE_DISABLE_SECONDS
        self.down_disable_after = down_disable_after or settings.SERVICE_DOWN_DISABLE_AFTER_FAILURES
        self.down_disable_seconds = down_disable_seconds or settings.SERVICE_DOWN_DISABLE_SECONDS

        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.consecutive_failures = 0
        self.half_open_attempts = 0
        self.opened_at: Optional[datetime] = None
        self.disabled_until: Optional[datetime] = None
        self.disabled_reason: Optional[str] = None

    def current_state(self, now: datetime) -> BreakerState:
        if (
            self.state == BreakerState.OPEN
            and self.opened_at is not None
            and now >= self.opened_at + timedelta(seconds=self.open_seconds)
        ):
            self.state = BreakerState.HALF_OPEN
            self.half_open_attempts = 0
            logger.info(f"Circuit breaker for {self.name} is half-open")
        return self.state

    def is_disabled(self, now: datetime) -> bool:
        if self.disabled_until is None:
            return False
        if now >= self.disabled_until:
            logger.info(f"Service {self.name} re-enabled after {self.disabled_reason}")
            self.disabled_until = None
            self.disabled_reason = None
            return False
        return True

    def allows(self, now: datetime) -> bool:
        """Whether the service may take new deliveries."""
        return not self.is_disabled(now) and self.current_state(now) != BreakerState.OPEN

    def record_success(self, now: datetime) -> None:
        self.consecutive_failures = 0
        if self.current_state(now) == BreakerState.HALF_OPEN:
            self.state = BreakerState.CLOSED
            self.failure_count = 0
            self.half_open_attempts = 0
            self.opened_at = None
            logger.info(f"Circuit breaker for {self.name} closed")
        else:
            self.failure_count = max(0, self.failure_count - 1)

    def record_failure(self, now: datetime, category: Optional[str] = None) -> None:
        self.consecutive_failures += 1
        state = self.current_state(now)

        if state == BreakerState.HALF_OPEN:
            self.half_open_attempts += 1
            if self.half_open_attempts >= self.half_open_max_attempts:
                self._open(now)
        elif state == BreakerState.CLOSED:
            self.failure_count += 1
            if self.failure_count >= self.failure_threshold:
                self._open(now)

        if category == "service_down" and self.consecutive_failures >= self.down_disable_after:
            self._disable(now, self.down_disable_seconds, "service down")
        elif self.consecutive_failures >= self.disable_after:
            self._disable(now, self.disable_seconds, "consecutive failures")

    def _open(self, now: datetime) -> None:
        self.state = BreakerState.OPEN
        self.opened_at = now
        self.half_open_attempts = 0
        logger.warning(f"Circuit breaker for {self.name} opened after {self.failure_count} failures")

    def _disable(self, now: datetime, seconds: int, reason: str) -> None:
        if self.is_disabled(now):
            return
        self.disabled_until = now + timedelta(seconds=seconds)
        self.disabled_reason = reason
        logger.warning(f"Service {self.name} disabled for {seconds}s ({reason})")

    def to_dict(self, now: datetime) -> Dict[str, Any]:
        return {
            "service": self.name,
            "state": self.current_state(now).value,
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "disabled_until": self.disabled_until.isoformat() if self.is_disabled(now) else None,
            "disabled_reason": self.disabled_reason,
        }
