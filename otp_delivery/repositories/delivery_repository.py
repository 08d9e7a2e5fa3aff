from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otp_delivery.models.delivery import DeliveryAttempt, DeliveryState, Recipient, utcnow
from otp_delivery.models.delivery_record import DeliveryRecord
from otp_delivery.services.retry import categorize_error

logger = structlog.get_logger(__name__)

RECORDED_FIELDS = (
    "channel", "state", "provider_name", "message_id", "error", "created_at",
    "sent_at", "delivered_at", "failed_at", "estimated_delivery_at",
)


# Alert thresholds
HIGH_FAILURE_MIN_ATTEMPTS = 10
HIGH_FAILURE_RATE = 0.5
DEGRADED_SERVICE_MIN_ATTEMPTS = 5
DEGRADED_SERVICE_FAILURE_RATE = 0.75
SILENCE_WINDOW = timedelta(minutes=15)
MAX_FAILURE_EXAMPLES = 3


def analyze_failures(records: Iterable[DeliveryRecord]) -> List[Dict[str, Any]]:
    """
    Group failed attempts by provider service and error category.

    Each group keeps a few example attempts. Groups are ordered by size,
    largest first.
    """
    groups: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for record in records:
        if record.state != DeliveryState.FAILED:
            continue
        service = record.provider_name or "unknown"
        category = categorize_error(record.error).value
        group = groups.setdefault((service, category), {
            "service": service,
            "error_type": category,
            "count": 0,
            "examples": [],
        })
        group["count"] += 1
        if len(group["examples"]) < MAX_FAILURE_EXAMPLES:
            group["examples"].append({
                "attempt_id": record.id,
                "channel": record.channel.value,
                "error": record.error,
                "failed_at": record.failed_at.isoformat() if record.failed_at is not None else None,
            })
    return sorted(groups.values(), key=lambda g: g["count"], reverse=True)


def _failure_rate(records: List[DeliveryRecord]) -> float:
    failed = sum(1 for r in records if r.state == DeliveryState.FAILED)
    return failed / len(records) if records else 0.0


def evaluate_alerts(records: Iterable[DeliveryRecord], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Alert conditions over the attempts of the last hour.

    Args:
        records: Attempts created within the last hour
        now: Reference time for the silence window

    Returns:
        List[Dict[str, Any]]: Raised alerts with type, severity and message
    """
    now = now or utcnow()
    records = list(records)
    alerts = []

    rate = _failure_rate(records)
    if len(records) > HIGH_FAILURE_MIN_ATTEMPTS and rate > HIGH_FAILURE_RATE:
        alerts.append({
            "type": "high_failure_rate",
            "severity": "critical",
            "message": f"{rate * 100:.1f}% of {len(records)} deliveries failed in the last hour",
            "value": round(rate * 100, 2),
        })

    by_service: Dict[str, List[DeliveryRecord]] = {}
    for record in records:
        by_service.setdefault(record.provider_name or "unknown", []).append(record)
    for service, attempts in sorted(by_service.items()):
        rate = _failure_rate(attempts)
        if len(attempts) > DEGRADED_SERVICE_MIN_ATTEMPTS and rate > DEGRADED_SERVICE_FAILURE_RATE:
            alerts.append({
                "type": "service_degradation",
                "severity": "warning",
                "service": service,
                "message": f"Service {service} failed {rate * 100:.1f}% of {len(attempts)} deliveries",
                "value": round(rate * 100, 2),
            })

    recent = [r for r in records if r.created_at >= now - SILENCE_WINDOW]
    if recent and not any(r.state in (DeliveryState.SENT, DeliveryState.DELIVERED) for r in recent):
        alerts.append({
            "type": "no_successful_deliveries",
            "severity": "critical",
            "message": f"None of the {len(recent)} deliveries in the last 15 minutes went out",
            "value": len(recent),
        })
    return alerts


class DeliveryRepository:
    """Repository for delivery record database operations."""

    def __init__(self, db: AsyncSession):
        """
        Initialize with a database session.

        Args:
            db: SQLAlchemy async session
        """
        self.db = db

    async def get(self, attempt_id: str) -> Optional[DeliveryRecord]:
        return await self.db.get(DeliveryRecord, attempt_id)

    async def save_attempt(self, request_id: str, recipient: Recipient, attempt: DeliveryAttempt) -> DeliveryRecord:
        """
        Insert or update the record of an attempt.

        Args:
            request_id: Logical delivery request the attempt belongs to
            recipient: Recipient of the request
            attempt: Current state of the attempt

        Returns:
            DeliveryRecord: The stored record
        """
        record = await self.get(attempt.id)
        if record is None:
            record = DeliveryRecord(
                id=attempt.id,
                request_id=request_id,
                recipient=recipient.address_for(attempt.channel) or "",
            )
            self.db.add(record)

        for field in RECORDED_FIELDS:
            setattr(record, field, getattr(attempt, field))

        await self.db.commit()
        await self.db.refresh(record)
        return record

    async def list_for_request(self, request_id: str) -> List[DeliveryRecord]:
        query = (
            select(DeliveryRecord)
            .where(DeliveryRecord.request_id == request_id)
            .order_by(DeliveryRecord.created_at)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_stats(self, hours: int = 24) -> Dict[str, Any]:
        """
        Delivery statistics over a time window.

        Args:
            hours: Size of the window, counted back from now

        Returns:
            Dict[str, Any]: Totals, success and failure counts, average
            delivery time and per-channel counts
        """
        cutoff = utcnow() - timedelta(hours=hours)
        successful = case(
            (DeliveryRecord.state.in_([DeliveryState.SENT, DeliveryState.DELIVERED]), 1), else_=0
        )
        failed = case((DeliveryRecord.state == DeliveryState.FAILED, 1), else_=0)
        delivery_ms = func.extract("epoch", DeliveryRecord.delivered_at - DeliveryRecord.created_at) * 1000

        totals_query = select(
            func.count(DeliveryRecord.id),
            func.coalesce(func.sum(successful), 0),
            func.coalesce(func.sum(failed), 0),
            func.avg(delivery_ms),
        ).where(DeliveryRecord.created_at >= cutoff)
        total, succeeded, failures, average = (await self.db.execute(totals_query)).one()

        channel_query = (
            select(DeliveryRecord.channel, func.count(DeliveryRecord.id))
            .where(DeliveryRecord.created_at >= cutoff)
            .group_by(DeliveryRecord.channel)
        )
        by_channel = {
            channel.value: count for channel, count in (await self.db.execute(channel_query)).all()
        }

        return {
            "window_hours": hours,
            "total_attempts": total,
            "successful_attempts": int(succeeded),
            "failed_attempts": int(failures),
            "success_rate": round(100.0 * int(succeeded) / total, 2) if total else 0.0,
            "average_delivery_time_ms": round(float(average), 2) if average is not None else None,
            "attempts_by_channel": by_channel,
        }

    async def list_since(self, cutoff: datetime, state: Optional[DeliveryState] = None) -> List[DeliveryRecord]:
        query = select(DeliveryRecord).where(DeliveryRecord.created_at >= cutoff)
        if state is not None:
            query = query.where(DeliveryRecord.state == state)
        result = await self.db.execute(query.order_by(DeliveryRecord.created_at))
        return list(result.scalars().all())

    async def get_failure_analysis(self, hours: int = 24) -> Dict[str, Any]:
        """Failed attempts of the window grouped by service and error category."""
        failures = await self.list_since(utcnow() - timedelta(hours=hours), DeliveryState.FAILED)
        return {
            "window_hours": hours,
            "total_failures": len(failures),
            "groups": analyze_failures(failures),
        }

    async def get_alert_conditions(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        records = await self.list_since(now - timedelta(hours=1))
        return evaluate_alerts(records, now)


def make_recorder(session_factory: async_sessionmaker):
    """Build an orchestrator recorder that persists every attempt change."""

    async def record(request_id: str, recipient: Recipient, attempt: DeliveryAttempt) -> None:
        async with session_factory() as db:
            await DeliveryRepository(db).save_attempt(request_id, recipient, attempt)

    return record
