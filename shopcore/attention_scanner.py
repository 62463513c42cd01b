"""
Surfaces orders that need an operator: anything still PENDING or CONFIRMED,
and PROCESSING orders that have not moved since the cutoff. Read only.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from shopcore import keys
from shopcore.config import Config
from shopcore.models import Order, OrderStatus, as_utc, utcnow
from shopcore.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)

AWAITING_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


class AttentionScanner:

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()

    def find_requiring_attention(self, cutoff: datetime) -> List[Order]:
        """Attention orders, oldest first. A naive ``cutoff`` is read as UTC"""
        cutoff = as_utc(cutoff)
        order_ids = set()
        for status in AWAITING_STATUSES:
            order_ids.update(self.redis.zrange(keys.status_index_key(status), 0, -1))

        # Status index scores are the last update time
        order_ids.update(self.redis.zrangebyscore(
            keys.status_index_key(OrderStatus.PROCESSING),
            "-inf",
            f"({cutoff.timestamp()!r}"
        ))

        raw_orders = self.redis.mget([keys.order_key(order_id) for order_id in sorted(order_ids)])
        orders = [Order.model_validate_json(raw) for raw in raw_orders if raw is not None]
        return sorted(orders, key=lambda order: order.created_at)

    def scan(self, threshold: Optional[timedelta] = None, now: Optional[datetime] = None) -> List[Order]:
        """Run the periodic check with the configured threshold"""
        threshold = threshold or timedelta(hours=Config.ATTENTION_THRESHOLD_HOURS)
        cutoff = (now or utcnow()) - threshold
        orders = self.find_requiring_attention(cutoff)
        if orders:
            logger.warning(f"{len(orders)} orders require attention (cutoff {cutoff.isoformat()})")
        return orders
