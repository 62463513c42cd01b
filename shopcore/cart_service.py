"""
Cart service for managing cart lines in Redis.

A cart is a hash of product_id -> quantity per owner, plus a sorted set
recording when each line was first added. One hash field per product makes
the one-line-per-owner-per-product rule structural.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from shopcore import keys
from shopcore.atomic_scripts import AtomicScripts
from shopcore.config import Config
from shopcore.exceptions import (
    LimitExceededError,
    ProductNotFoundError,
    ValidationError,
)
from shopcore.inventory_ledger import InventoryLedger
from shopcore.models import CartLine, CartResponse, LineAvailability, Owner, utcnow
from shopcore.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


class CartService:
    """Service for cart operations"""

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()
        self.scripts = AtomicScripts(self.redis)

    def _get_ttl(self, owner: Owner) -> int:
        """Guest carts expire; user carts do not"""
        if owner.is_guest:
            return Config.GUEST_CART_TTL_SECONDS
        return 0

    def add_or_increment(self, owner: Owner, product_id: str, quantity: int) -> int:
        """
        Create a line or change its quantity by ``quantity``.

        Negative deltas are accepted while the line stays at 1 or more; use
        ``remove`` to delete a line.

        Returns:
            The line quantity after the operation
        """
        if quantity == 0:
            raise ValidationError("Quantity delta cannot be zero")

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        result = self.scripts.cart_add(
            lines_key=keys.cart_lines_key(owner),
            added_key=keys.cart_added_key(owner),
            product_id=product_id,
            delta=quantity,
            now=utcnow().timestamp(),
            max_items=Config.MAX_ITEMS_PER_CART,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=self._get_ttl(owner)
        )

        status = result[0]
        if status == "BELOW_MINIMUM":
            raise ValidationError(
                f"Quantity for {product_id} would drop below 1 (currently {result[1]}); remove the line instead"
            )
        if status == "MAX_QUANTITY_EXCEEDED":
            raise LimitExceededError(f"Quantity exceeds maximum {result[1]}")
        if status == "MAX_ITEMS_EXCEEDED":
            raise LimitExceededError(f"Cart exceeds maximum items {result[1]}")

        if owner.is_guest and int(result[2]):
            self.redis.sadd(keys.GUEST_CART_INDEX_KEY, owner.id)

        logger.info(f"Cart {owner.log_id}: {product_id} quantity now {result[1]}")
        return int(result[1])

    def set_quantity(self, owner: Owner, product_id: str, quantity: int) -> int:
        """Set a line's quantity explicitly; zero removes the line"""
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative")

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        result = self.scripts.cart_set_quantity(
            lines_key=keys.cart_lines_key(owner),
            added_key=keys.cart_added_key(owner),
            product_id=product_id,
            quantity=quantity,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=self._get_ttl(owner)
        )

        if result[0] == "PRODUCT_NOT_FOUND":
            raise ProductNotFoundError(product_id)
        if result[0] == "MAX_QUANTITY_EXCEEDED":
            raise LimitExceededError(f"Quantity exceeds maximum {result[1]}")

        return int(result[1])

    def remove(self, owner: Owner, product_id: str) -> bool:
        """Remove a line from the cart"""
        lines_key = keys.cart_lines_key(owner)
        added_key = keys.cart_added_key(owner)

        def _remove(pipe):
            pipe.hdel(lines_key, product_id)
            pipe.zrem(added_key, product_id)

        deleted, _ = self.redis.transaction(_remove)
        return deleted > 0

    def clear(self, owner: Owner) -> bool:
        """Clear all lines from the cart"""
        deleted = self.redis.delete(keys.cart_lines_key(owner), keys.cart_added_key(owner))
        if owner.is_guest:
            self.redis.srem(keys.GUEST_CART_INDEX_KEY, owner.id)
        return deleted > 0

    def lines_for(self, owner: Owner) -> List[CartLine]:
        """Cart lines, most recently added first"""
        lines_key = keys.cart_lines_key(owner)
        added_key = keys.cart_added_key(owner)

        def _read(pipe):
            pipe.hgetall(lines_key)
            pipe.zrange(added_key, 0, -1, desc=True, withscores=True)

        quantities, added = self.redis.transaction(_read)

        lines = []
        for product_id, score in added:
            quantity = quantities.pop(product_id, None)
            if quantity is None:
                continue
            lines.append(CartLine(
                owner=owner,
                product_id=product_id,
                quantity=int(quantity),
                added_at=datetime.fromtimestamp(score, tz=timezone.utc)
            ))

        if quantities:
            logger.warning(f"Cart {owner.log_id}: {len(quantities)} lines missing an added-at entry")

        return lines

    def get_cart(self, owner: Owner) -> CartResponse:
        """Get cart contents"""
        lines = self.lines_for(owner)
        return CartResponse(
            owner_key=owner.key,
            lines=lines,
            total_quantity=sum(line.quantity for line in lines)
        )

    def total_quantity(self, owner: Owner) -> int:
        quantities = self.redis.hgetall(keys.cart_lines_key(owner))
        return sum(int(quantity) for quantity in quantities.values())

    def validate_availability(self, owner: Owner, ledger: InventoryLedger) -> List[LineAvailability]:
        """Report each line against current stock without reserving anything"""
        report = []
        for line in self.lines_for(owner):
            available = ledger.available_quantity(line.product_id)
            report.append(LineAvailability(
                product_id=line.product_id,
                requested=line.quantity,
                available=available,
                is_available=available >= line.quantity
            ))
        return report

    def purge_expired_guest_carts(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """
        Delete guest lines first added before ``now - older_than``.

        Best effort: carts are processed one at a time and a failure on one
        cart does not undo the others.

        Returns:
            Number of lines removed
        """
        cutoff = (now or utcnow()) - older_than
        removed_total = 0

        for session_token in self.redis.smembers(keys.GUEST_CART_INDEX_KEY):
            owner = Owner.guest(session_token)
            removed, remaining = self.scripts.cart_purge(
                keys.cart_lines_key(owner),
                keys.cart_added_key(owner),
                cutoff.timestamp()
            )
            removed_total += int(removed)
            if int(remaining) == 0:
                self.redis.srem(keys.GUEST_CART_INDEX_KEY, session_token)

        if removed_total:
            logger.info(f"Purged {removed_total} guest cart lines older than {cutoff.isoformat()}")
        return removed_total
