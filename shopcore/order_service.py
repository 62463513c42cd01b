"""
Order service: checkout from a cart snapshot and order status transitions.
"""
import logging
import random
import time
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from shopcore import keys
from shopcore.atomic_scripts import AtomicScripts
from shopcore.cart_service import CartService
from shopcore.catalog import Catalog, RedisCatalog
from shopcore.config import Config
from shopcore.events import EventPublisher
from shopcore.exceptions import (
    ConcurrentModificationError,
    EmptyCartError,
    InvalidTransitionError,
    InventoryInvariantError,
    OperationTimeoutError,
    OrderNotFoundError,
    OrderPersistenceError,
    RedisConnectionError,
    ShopCoreError,
    ValidationError,
)
from shopcore.inventory_ledger import InventoryLedger, StockLine, normalize_lines
from shopcore.models import (
    CartLine,
    Order,
    OrderLine,
    OrderStatus,
    Owner,
    PaymentStatus,
    as_utc,
    utcnow,
)
from shopcore.order_history import SYSTEM_ACTOR, build_entry, encode_entry
from shopcore.order_states import (
    INITIAL_STATUS,
    RESERVED_STATUSES,
    TERMINAL_STATUSES,
    denial_reason,
    is_cancellable,
    is_refundable,
    is_transition_allowed,
)
from shopcore.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)


def generate_order_number(now: datetime) -> str:
    """ORD-<yyyyMMddHHmmss>-<3 random digits>; uniqueness is checked on write"""
    return f"ORD-{now.strftime('%Y%m%d%H%M%S')}-{random.randint(0, 999):03d}"


class OrderService:
    """Service for order creation and lifecycle"""

    def __init__(
        self,
        redis: Optional[RedisClient] = None,
        ledger: Optional[InventoryLedger] = None,
        carts: Optional[CartService] = None,
        catalog: Optional[Catalog] = None,
        events: Optional[EventPublisher] = None
    ):
        self.redis = redis or get_redis_client()
        self.scripts = AtomicScripts(self.redis)
        self.ledger = ledger or InventoryLedger(self.redis)
        self.carts = carts or CartService(self.redis)
        self.catalog = catalog or RedisCatalog(self.redis)
        self.events = events or EventPublisher(self.redis)

    # Checkout

    def create_order(self, owner: Owner, timeout: Optional[float] = None) -> Order:
        """
        Create an order from the owner's cart:
        1. Snapshot the cart lines
        2. Reserve stock for every line (all or nothing)
        3. Freeze sku and unit price from the catalog
        4. Persist order, first history entry and consume the cart lines

        Any failure after step 2 releases the reservation before the error
        propagates, so a failed checkout never leaves stock reserved.

        Args:
            owner: Cart owner placing the order
            timeout: Optional deadline in seconds for the whole operation

        Returns:
            The created order, status PENDING

        Raises:
            EmptyCartError: no lines; nothing was reserved
            InsufficientInventoryError: some line cannot be reserved; no side effects
            OperationTimeoutError: deadline passed; any reservation was released
        """
        deadline = time.monotonic() + timeout if timeout is not None else None

        snapshot = self.carts.lines_for(owner)
        if not snapshot:
            raise EmptyCartError(owner.key)

        stock_lines: List[StockLine] = [(line.product_id, line.quantity) for line in snapshot]

        self._check_deadline(deadline, "before reservation")
        self.ledger.reserve(stock_lines)

        try:
            self._check_deadline(deadline, "after reservation")
            order_lines = self._freeze_lines(snapshot)
            self._check_deadline(deadline, "before persisting order")
            order = self._persist_new_order(owner, order_lines, stock_lines)
        except Exception as e:
            logger.warning(
                f"Checkout for {owner.log_id} failed after reservation ({type(e).__name__}); releasing stock"
            )
            self._compensate(stock_lines)
            raise

        logger.info(
            f"Order created: {order.order_number} for {owner.log_id}, "
            f"{len(order.lines)} lines, subtotal {order.subtotal}"
        )
        self.events.publish("order.created", {
            "order_id": order.id,
            "order_number": order.order_number,
            "owner": owner.key,
            "subtotal": str(order.subtotal),
        })
        self._notify_low_stock([product_id for product_id, _ in stock_lines])
        return order

    def _check_deadline(self, deadline: Optional[float], stage: str) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise OperationTimeoutError(f"Checkout deadline exceeded {stage}")

    def _compensate(self, stock_lines: List[StockLine]) -> None:
        try:
            self.ledger.release(stock_lines)
        except ShopCoreError:
            # The original failure is re-raised by the caller; this one needs an operator
            logger.error("Compensating release failed; reserved stock is stranded", exc_info=True)

    def _freeze_lines(self, snapshot: List[CartLine]) -> List[OrderLine]:
        lines = []
        for line in snapshot:
            entry = self.catalog.get_entry(line.product_id)
            lines.append(OrderLine(
                product_id=line.product_id,
                sku=entry.sku,
                quantity=line.quantity,
                unit_price=entry.price
            ))
        return lines

    def _persist_new_order(self, owner: Owner, lines: List[OrderLine], consumed: List[StockLine]) -> Order:
        now = utcnow()
        order_id = str(uuid.uuid4())

        for _ in range(Config.ORDER_NUMBER_MAX_ATTEMPTS):
            order = Order(
                id=order_id,
                order_number=generate_order_number(now),
                owner=owner,
                status=INITIAL_STATUS,
                payment_status=PaymentStatus.UNPAID,
                lines=lines,
                created_at=now,
                updated_at=now
            )
            entry = build_entry(order.id, None, INITIAL_STATUS, owner.key, now, "Order created")

            reply = self.scripts.create_order(
                keys=[
                    keys.order_key(order.id),
                    keys.order_number_key(order.order_number),
                    keys.owner_orders_key(owner),
                    keys.status_index_key(INITIAL_STATUS),
                    keys.order_history_key(order.id),
                    keys.cart_lines_key(owner),
                    keys.cart_added_key(owner),
                    keys.ORDERS_BY_CREATION_KEY,
                ],
                order_id=order.id,
                order_json=order.model_dump_json(),
                created=now.timestamp(),
                history_json=encode_entry(entry),
                consumed=consumed
            )

            if reply[0] == "OK":
                return order
            if reply[0] == "DUPLICATE_ID":
                order_id = str(uuid.uuid4())

        raise OrderPersistenceError(
            f"Could not allocate a unique order number after {Config.ORDER_NUMBER_MAX_ATTEMPTS} attempts"
        )

    # Transitions

    def transition(
        self,
        order_id: str,
        target_status: OrderStatus,
        actor: str = SYSTEM_ACTOR,
        reason: Optional[str] = None
    ) -> Order:
        """
        Move an order to ``target_status``.

        The write is a compare-and-swap on the stored order document; if another
        writer got there first the edge is re-validated against the new state and
        the swap retried. Inventory effects are part of the swap itself:
        CANCELLED releases reserved stock and SHIPPED commits it, so the order
        status and the stock counters never disagree.

        Raises:
            OrderNotFoundError: unknown order id
            InvalidTransitionError: edge not permitted; nothing changed
            InventoryInvariantError: reserved stock does not cover the order;
                nothing changed
        """
        target = OrderStatus(target_status)

        for _ in range(Config.ORDER_SWAP_MAX_ATTEMPTS):
            raw, order = self._load_raw(order_id)

            if not is_transition_allowed(order.status, target, order.payment_status):
                logger.info(f"Rejected transition for {order.order_number}: {order.status.value} -> {target.value}")
                raise InvalidTransitionError(
                    order.status, target, denial_reason(order.status, target, order.payment_status)
                )

            now = utcnow()
            changes = {"status": target, "updated_at": now}
            if target is OrderStatus.REFUNDED:
                changes["payment_status"] = PaymentStatus.REFUNDED
            updated = order.model_copy(update=changes)
            entry = build_entry(order.id, order.status, target, actor, now, reason)

            if self._swap(raw, order, updated, encode_entry(entry), now, self._stock_mode(order.status, target)):
                logger.info(
                    f"Order {order.order_number}: {order.status.value} -> {target.value} by {actor}"
                )
                self.events.publish("order.status_changed", {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "from_status": order.status.value,
                    "to_status": target.value,
                    "changed_by": actor,
                })
                return updated

            logger.debug(f"Order {order_id} changed during transition, retrying")

        raise ConcurrentModificationError(order_id, Config.ORDER_SWAP_MAX_ATTEMPTS)

    @staticmethod
    def _stock_mode(previous: OrderStatus, target: OrderStatus) -> str:
        if target is OrderStatus.CANCELLED and previous in RESERVED_STATUSES:
            return "release"
        if target is OrderStatus.SHIPPED:
            return "commit"
        return "none"

    def _swap(
        self,
        raw: str,
        order: Order,
        updated: Order,
        history_json: str,
        now: datetime,
        stock_mode: str = "none"
    ) -> bool:
        batch = normalize_lines(order.stock_lines()) if stock_mode != "none" else []
        reply = self.scripts.swap_order(
            keys=[
                keys.order_key(order.id),
                keys.order_history_key(order.id),
                keys.status_index_key(order.status),
                keys.status_index_key(updated.status),
            ],
            order_id=order.id,
            expected_json=raw,
            new_json=updated.model_dump_json(),
            history_json=history_json,
            updated=now.timestamp(),
            stock_mode=stock_mode,
            record_keys=[keys.inventory_key(product_id) for product_id, _ in batch],
            quantities=[quantity for _, quantity in batch]
        )
        if reply[0] == "MISSING":
            raise OrderNotFoundError(order.id)
        if reply[0] == "NOT_RESERVED":
            product_id, requested = batch[int(reply[1]) - 1]
            logger.error(
                f"Order {order.order_number}: cannot {stock_mode} {requested} units of {product_id}, "
                f"only {reply[2]} reserved"
            )
            raise InventoryInvariantError(product_id, requested, int(reply[2]))
        return reply[0] == "OK"

    def confirm(self, order_id: str, actor: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, OrderStatus.CONFIRMED, actor, reason)

    def process(self, order_id: str, actor: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, OrderStatus.PROCESSING, actor, reason)

    def ship(self, order_id: str, actor: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, OrderStatus.SHIPPED, actor, reason)

    def deliver(self, order_id: str, actor: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, OrderStatus.DELIVERED, actor, reason)

    def cancel(self, order_id: str, actor: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, OrderStatus.CANCELLED, actor, reason)

    def refund(self, order_id: str, actor: str = SYSTEM_ACTOR, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, OrderStatus.REFUNDED, actor, reason)

    def record_payment(self, order_id: str, payment_status: PaymentStatus) -> Order:
        """Update payment status reported by the payment collaborator"""
        payment_status = PaymentStatus(payment_status)
        if payment_status is PaymentStatus.REFUNDED:
            raise ValidationError("Refunds go through the REFUNDED order transition")

        for _ in range(Config.ORDER_SWAP_MAX_ATTEMPTS):
            raw, order = self._load_raw(order_id)
            if order.status in TERMINAL_STATUSES and order.status is not OrderStatus.DELIVERED:
                raise ValidationError(f"Cannot change payment of a {order.status.value} order")
            if order.payment_status is payment_status:
                return order

            now = utcnow()
            updated = order.model_copy(update={"payment_status": payment_status, "updated_at": now})
            if self._swap(raw, order, updated, "", now):
                logger.info(f"Order {order.order_number}: payment {order.payment_status.value} -> {payment_status.value}")
                return updated

        raise ConcurrentModificationError(order_id, Config.ORDER_SWAP_MAX_ATTEMPTS)

    # Queries

    def _load_raw(self, order_id: str):
        raw = self.redis.get(keys.order_key(order_id))
        if raw is None:
            raise OrderNotFoundError(order_id)
        return raw, Order.model_validate_json(raw)

    def _load_many(self, order_ids: List[str]) -> List[Order]:
        raw_orders = self.redis.mget([keys.order_key(order_id) for order_id in order_ids])
        return [Order.model_validate_json(raw) for raw in raw_orders if raw is not None]

    def get_order(self, order_id: str) -> Order:
        return self._load_raw(order_id)[1]

    def get_by_number(self, order_number: str) -> Order:
        order_id = self.redis.get(keys.order_number_key(order_number))
        if order_id is None:
            raise OrderNotFoundError(order_number)
        return self.get_order(order_id)

    def orders_for(
        self,
        owner: Owner,
        status: Optional[OrderStatus] = None,
        since: Optional[datetime] = None
    ) -> List[Order]:
        """
        Owner's orders, newest first.

        Args:
            owner: Order owner
            status: Only orders currently in this status
            since: Only orders created at or after this time (naive means UTC)
        """
        index_key = keys.owner_orders_key(owner)
        if since is None:
            order_ids = self.redis.zrange(index_key, 0, -1, desc=True)
        else:
            order_ids = list(reversed(
                self.redis.zrangebyscore(index_key, as_utc(since).timestamp(), "+inf")
            ))

        orders = self._load_many(order_ids)
        if status is not None:
            status = OrderStatus(status)
            orders = [order for order in orders if order.status is status]
        return orders

    def recent_orders(self, owner: Owner, days: int = 30, now: Optional[datetime] = None) -> List[Order]:
        """Owner's orders created in the last ``days`` days"""
        if days < 1:
            raise ValidationError("days must be at least 1")
        return self.orders_for(owner, since=(now or utcnow()) - timedelta(days=days))

    def find_cancellable(self, owner: Owner) -> List[Order]:
        return [order for order in self.orders_for(owner) if is_cancellable(order.status)]

    def find_refundable(self, owner: Owner) -> List[Order]:
        return [
            order for order in self.orders_for(owner)
            if is_refundable(order.status, order.payment_status)
        ]

    def orders_by_status(self, status: OrderStatus) -> List[Order]:
        """Orders in ``status``, most recently updated first"""
        order_ids = self.redis.zrange(keys.status_index_key(OrderStatus(status)), 0, -1, desc=True)
        return self._load_many(order_ids)

    def status_counts(self) -> Dict[OrderStatus, int]:
        return {status: self.redis.zcard(keys.status_index_key(status)) for status in OrderStatus}

    def _notify_low_stock(self, product_ids: List[str]) -> None:
        try:
            records = self.ledger.low_stock(product_ids)
        except RedisConnectionError as e:
            logger.warning(f"Skipped low stock check: {e}")
            return
        for record in records:
            logger.warning(
                f"Low stock: {record.product_id} available {record.quantity_available}, "
                f"reorder level {record.reorder_level}"
            )
            self.events.publish("inventory.low_stock", record.model_dump())
