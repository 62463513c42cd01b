"""
Fire-and-forget notifications over Redis pub/sub.

Subscribers (websocket gateways, alerting) are outside this package; nothing
here waits for them, and a failed publish never fails the caller's operation.
"""
import json
import logging
from typing import Any, Dict, Optional

from shopcore.config import Config
from shopcore.exceptions import RedisConnectionError
from shopcore.models import utcnow
from shopcore.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes events to ``<prefix>:<event_type>`` channels"""

    def __init__(self, redis: Optional[RedisClient] = None, enabled: Optional[bool] = None):
        self.redis = redis or get_redis_client()
        self.enabled = Config.EVENTS_ENABLED if enabled is None else enabled

    def channel(self, event_type: str) -> str:
        return f"{Config.EVENTS_CHANNEL_PREFIX}:{event_type}"

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        """Returns True when the event was handed to Redis"""
        if not self.enabled:
            return False

        message = json.dumps({
            "type": event_type,
            "occurred_at": utcnow().isoformat(),
            "data": payload,
        }, default=str)

        try:
            self.redis.publish(self.channel(event_type), message)
        except RedisConnectionError as e:
            logger.warning(f"Dropped {event_type} event: {e}")
            return False
        return True
