"""
Redis sink for risk snapshots.

Writes the latest risk score per user and the alert feed to Redis so
dashboards can read current risk without querying the monitor.
"""

import json
from typing import Any, Dict, Optional

import redis
import structlog

from riskstream.core.models.state import Alert, RiskScoreEntry
from riskstream.core.utils.metrics import ALERT_DELIVERIES

logger = structlog.get_logger(__name__)


class RiskSnapshotSink:
    """Sink risk scores and alerts to Redis."""

    name = "redis"

    def __init__(self, redis_client: Optional[redis.Redis] = None, host: str = "localhost",
                 port: int = 6379, db: int = 0, ttl_seconds: int = 86400, max_alerts: int = 1000):
        self.redis_client = redis_client or redis.Redis(host=host, port=port, db=db, decode_responses=True)
        self.ttl_seconds = ttl_seconds
        self.max_alerts = max_alerts

    def _serialize_for_redis(self, values: Dict[str, Any]) -> Dict[str, str]:
        """Convert values to Redis-compatible strings."""
        serialized = {}
        for key, value in values.items():
            if value is None:
                serialized[key] = "null"
            elif isinstance(value, bool):
                serialized[key] = "true" if value else "false"
            elif isinstance(value, (int, float, str)):
                serialized[key] = str(value)
            else:
                serialized[key] = json.dumps(value)
        return serialized

    def write_score(self, entry: RiskScoreEntry) -> bool:
        """Store the user's current risk entry."""
        try:
            payload = entry.to_dict()
            score_key = f"risk:user:{entry.user_id}"
            latest_key = f"risk:latest:{entry.user_id}"

            self.redis_client.hset(score_key, mapping=self._serialize_for_redis(payload))
            self.redis_client.expire(score_key, self.ttl_seconds)
            self.redis_client.set(latest_key, json.dumps(payload), ex=self.ttl_seconds)

            logger.debug("Wrote risk score to Redis", user_id=entry.user_id, key=latest_key)
            return True

        except redis.RedisError as e:
            logger.error("Failed to write risk score to Redis", user_id=entry.user_id, error=str(e))
            return False

    def deliver(self, alert: Alert) -> bool:
        """Append an alert to the alert feed, keeping the newest max_alerts."""
        try:
            self.redis_client.lpush("risk:alerts", json.dumps(alert.to_dict()))
            self.redis_client.ltrim("risk:alerts", 0, self.max_alerts - 1)
            return True

        except redis.RedisError as e:
            ALERT_DELIVERIES.labels(sink=self.name, status="error").inc()
            logger.error("Failed to write alert to Redis", alert_id=alert.alert_id, error=str(e))
            return False
