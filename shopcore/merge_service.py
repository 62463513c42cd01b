"""
Folds a guest cart into a user cart when the shopper logs in.
"""
import logging
from typing import Optional

from shopcore import keys
from shopcore.atomic_scripts import AtomicScripts
from shopcore.config import Config
from shopcore.events import EventPublisher
from shopcore.exceptions import LimitExceededError, MergeFailedError, RedisConnectionError
from shopcore.models import MergeResult, Owner, utcnow
from shopcore.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


class CartMergeService:
    """
    Merge policy for a product present in both carts: the user keeps one line
    with ``min(guest_qty + user_qty, quantity_available, MAX_QUANTITY_PER_ITEM)``.
    A cap below 1 drops the line. Guest-only lines move over unchanged, and the
    guest cart is deleted in the same atomic step.
    """

    def __init__(self, redis: Optional[RedisClient] = None, events: Optional[EventPublisher] = None):
        self.redis = redis or get_redis_client()
        self.scripts = AtomicScripts(self.redis)
        self.events = events or EventPublisher(self.redis)

    def merge(self, guest_session_id: str, user_id: str) -> MergeResult:
        """
        Merge the guest session's cart into the user's cart.

        Raises:
            MergeFailedError: the guest cart could not be merged; it is left intact
            LimitExceededError: moving the guest lines would exceed MAX_ITEMS_PER_CART;
                the guest cart is left intact
        """
        guest = Owner.guest(guest_session_id)
        user = Owner.user(user_id)

        for attempt in range(1, Config.MERGE_MAX_ATTEMPTS + 1):
            try:
                result = self._attempt(guest, user)
            except RedisConnectionError as e:
                logger.error(f"Cart merge {guest.log_id} -> {user.log_id} failed: {e}")
                raise MergeFailedError(guest_session_id, f"Cart merge failed: {e}") from e

            if result is not None:
                self.redis.srem(keys.GUEST_CART_INDEX_KEY, guest_session_id)
                logger.info(
                    f"Merged cart {guest.log_id} into {user.log_id}: moved={result.moved} "
                    f"conflicts={result.conflicts} capped={result.capped} dropped={result.dropped}"
                )
                self.events.publish("cart.merged", {
                    "user_id": user_id,
                    "moved": result.moved,
                    "conflicts": result.conflicts,
                })
                return result

            logger.info(f"Guest cart {guest.log_id} changed during merge, attempt {attempt}")

        raise MergeFailedError(
            guest_session_id,
            f"Guest cart kept changing; gave up after {Config.MERGE_MAX_ATTEMPTS} attempts"
        )

    def _attempt(self, guest: Owner, user: Owner) -> Optional[MergeResult]:
        """One merge pass; None when the guest cart changed under us"""
        product_ids = sorted(self.redis.hgetall(keys.cart_lines_key(guest)))
        if not product_ids:
            return MergeResult()

        reply = self.scripts.merge_cart(
            guest_keys=(keys.cart_lines_key(guest), keys.cart_added_key(guest)),
            user_keys=(keys.cart_lines_key(user), keys.cart_added_key(user)),
            record_keys=[keys.inventory_key(product_id) for product_id in product_ids],
            product_ids=product_ids,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            max_items=Config.MAX_ITEMS_PER_CART,
            now=utcnow().timestamp()
        )

        if reply[0] == "STALE":
            return None
        if reply[0] == "MAX_ITEMS_EXCEEDED":
            logger.warning(f"Cart merge {guest.log_id} -> {user.log_id} would exceed {reply[1]} lines")
            raise LimitExceededError(f"Merged cart would exceed maximum items {reply[1]}")

        _, moved, conflicts, capped, dropped = reply
        return MergeResult(
            moved=int(moved),
            conflicts=int(conflicts),
            capped=int(capped),
            dropped=int(dropped)
        )
