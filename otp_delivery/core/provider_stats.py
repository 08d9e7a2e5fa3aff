"""
Provider outcome statistics persisted in Redis
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis

from otp_delivery.core.config import settings
from otp_delivery.models.channel import DeliveryChannel

OUTCOMES = ("accepted", "rejected")


class ProviderStats:
    """Counts how often each provider accepted or rejected a code, per channel"""

    def __init__(self, client: Optional[Any] = None):
        # Workers and the API share the broker's Redis
        self.redis_client = client or redis.Redis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        self.stats_key_prefix = "provider:stats:"

    def _key(self, provider_name: str, channel: str, outcome: str) -> str:
        return f"{self.stats_key_prefix}{provider_name}:{channel}:{outcome}"

    def record(self, provider_name: str, channel: str, accepted: bool) -> None:
        """Count one provider outcome"""
        key = self._key(provider_name, channel, "accepted" if accepted else "rejected")
        self.redis_client.hincrby(key, "count", 1)
        self.redis_client.hset(key, "last_updated", datetime.now(timezone.utc).isoformat())

    def get_stats(self, provider_name: str) -> Dict[str, Dict[str, Any]]:
        """Outcome counts and acceptance rate for every channel of a provider"""
        stats = {}
        for channel in DeliveryChannel:
            counts = {}
            for outcome in OUTCOMES:
                value = self.redis_client.hget(self._key(provider_name, channel.value, outcome), "count")
                if isinstance(value, bytes):
                    value = value.decode("utf-8")
                counts[outcome] = int(value) if value is not None else 0
            total = counts["accepted"] + counts["rejected"]
            counts["acceptance_rate"] = round(counts["accepted"] / total * 100, 2) if total else None
            stats[channel.value] = counts
        return stats

    def reset_stats(self, provider_name: str) -> None:
        for channel in DeliveryChannel:
            for outcome in OUTCOMES:
                self.redis_client.delete(self._key(provider_name, channel.value, outcome))


# Global instance
provider_stats = ProviderStats()
