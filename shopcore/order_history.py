"""
Append-only status history per order.

Entries are appended only by the order service's atomic scripts, in the same
step that changes the order's status, so the list order is the transition
order.
"""
from datetime import datetime
from typing import List, Optional

from shopcore import keys
from shopcore.models import OrderStatus, OrderStatusHistoryEntry
from shopcore.redis_client import RedisClient, get_redis_client

SYSTEM_ACTOR = "system"


def build_entry(
    order_id: str,
    from_status: Optional[OrderStatus],
    to_status: OrderStatus,
    changed_by: str,
    created_at: datetime,
    reason: Optional[str] = None
) -> OrderStatusHistoryEntry:
    return OrderStatusHistoryEntry(
        order_id=order_id,
        from_status=from_status,
        to_status=to_status,
        changed_by=changed_by or SYSTEM_ACTOR,
        reason=reason,
        created_at=created_at,
    )


def encode_entry(entry: OrderStatusHistoryEntry) -> str:
    return entry.model_dump_json()


class OrderHistoryLog:
    """Read side of the status history"""

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()

    def entries_for(self, order_id: str) -> List[OrderStatusHistoryEntry]:
        """All entries, oldest first"""
        raw = self.redis.lrange(keys.order_history_key(order_id), 0, -1)
        return [OrderStatusHistoryEntry.model_validate_json(item) for item in raw]

    def latest(self, order_id: str) -> Optional[OrderStatusHistoryEntry]:
        raw = self.redis.lrange(keys.order_history_key(order_id), -1, -1)
        if not raw:
            return None
        return OrderStatusHistoryEntry.model_validate_json(raw[0])

    def status_path(self, order_id: str) -> List[OrderStatus]:
        """Statuses the order has passed through, starting with PENDING"""
        return [entry.to_status for entry in self.entries_for(order_id)]
