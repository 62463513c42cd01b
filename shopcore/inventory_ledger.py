"""
Inventory ledger: per-product stock counters with atomic reserve/release/commit.

Counters are only changed through the Lua scripts in ``atomic_scripts``; each
call validates every record in its batch before it writes any of them.
"""
import logging
from collections import OrderedDict
from typing import Iterable, List, Optional, Tuple

from shopcore import keys
from shopcore.atomic_scripts import AtomicScripts
from shopcore.exceptions import (
    InsufficientInventoryError,
    InventoryInvariantError,
    InventoryRecordExistsError,
    InventoryRecordNotFoundError,
    ValidationError,
)
from shopcore.models import InventoryRecord, InventoryStatistics
from shopcore.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)

StockLine = Tuple[str, int]


def normalize_lines(lines: Iterable[StockLine]) -> List[StockLine]:
    """Sum duplicate products, keeping first-seen order"""
    totals: "OrderedDict[str, int]" = OrderedDict()
    for product_id, quantity in lines:
        if quantity < 1:
            raise ValidationError(f"Quantity for {product_id} must be at least 1")
        totals[product_id] = totals.get(product_id, 0) + int(quantity)
    return list(totals.items())


class InventoryLedger:
    """Service for inventory operations"""

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()
        self.scripts = AtomicScripts(self.redis)

    def reserve(self, lines: Iterable[StockLine]) -> None:
        """
        Move units from available to reserved for every line, or for none.

        Raises:
            InsufficientInventoryError: naming the first product that cannot be
                satisfied; no counters were changed
        """
        batch = normalize_lines(lines)
        if not batch:
            return

        result = self.scripts.reserve(
            [keys.inventory_key(product_id) for product_id, _ in batch],
            [quantity for _, quantity in batch]
        )
        if result[0] == "INSUFFICIENT":
            product_id, requested = batch[int(result[1]) - 1]
            logger.info(
                f"Reservation rejected: product {product_id} requested {requested}, "
                f"available {result[2]}"
            )
            raise InsufficientInventoryError(product_id, requested, int(result[2]))

        logger.debug(f"Reserved {len(batch)} product lines")

    def release(self, lines: Iterable[StockLine]) -> None:
        """Return reserved units to available (cancellation before shipment)"""
        self._settle("release", lines)

    def commit(self, lines: Iterable[StockLine]) -> None:
        """Permanently remove reserved units (shipment)"""
        self._settle("commit", lines)

    def _settle(self, mode: str, lines: Iterable[StockLine]) -> None:
        batch = normalize_lines(lines)
        if not batch:
            return

        result = self.scripts.settle(
            mode,
            [keys.inventory_key(product_id) for product_id, _ in batch],
            [quantity for _, quantity in batch]
        )
        if result[0] == "NOT_RESERVED":
            product_id, requested = batch[int(result[1]) - 1]
            logger.error(f"Cannot {mode} {requested} units of {product_id}: only {result[2]} reserved")
            raise InventoryInvariantError(product_id, requested, int(result[2]))

    def is_available(self, product_id: str, quantity: int) -> bool:
        """Non-mutating check against quantity available"""
        raw = self.redis.hget(keys.inventory_key(product_id), "available")
        return int(raw or 0) >= quantity

    def available_quantity(self, product_id: str) -> int:
        return int(self.redis.hget(keys.inventory_key(product_id), "available") or 0)

    # Stock administration

    def create_record(self, product_id: str, quantity: int = 0, reorder_level: int = 0) -> InventoryRecord:
        if quantity < 0 or reorder_level < 0:
            raise ValidationError("Quantity and reorder level cannot be negative")

        result = self.scripts.create_record(
            keys.inventory_key(product_id),
            keys.INVENTORY_INDEX_KEY,
            product_id,
            quantity,
            reorder_level
        )
        if result[0] == "EXISTS":
            raise InventoryRecordExistsError(product_id)
        return InventoryRecord(
            product_id=product_id,
            quantity_available=quantity,
            reorder_level=reorder_level
        )

    def get_record(self, product_id: str) -> InventoryRecord:
        data = self.redis.hgetall(keys.inventory_key(product_id))
        if not data:
            raise InventoryRecordNotFoundError(product_id)
        return self._to_record(product_id, data)

    def add_stock(self, product_id: str, quantity: int) -> int:
        """Receive stock into available; returns the new available count"""
        if quantity < 1:
            raise ValidationError("Quantity to add must be at least 1")
        return self._adjust(product_id, quantity)

    def remove_stock(self, product_id: str, quantity: int) -> int:
        """Write off unreserved stock; returns the new available count"""
        if quantity < 1:
            raise ValidationError("Quantity to remove must be at least 1")
        return self._adjust(product_id, -quantity)

    def _adjust(self, product_id: str, delta: int) -> int:
        result = self.scripts.adjust_available(keys.inventory_key(product_id), delta)
        if result[0] == "MISSING":
            raise InventoryRecordNotFoundError(product_id)
        if result[0] == "INSUFFICIENT":
            raise InsufficientInventoryError(product_id, -delta, int(result[1]))
        logger.info(f"Stock adjusted for {product_id} by {delta}, available now {result[1]}")
        return int(result[1])

    def set_reorder_level(self, product_id: str, reorder_level: int) -> None:
        if reorder_level < 0:
            raise ValidationError("Reorder level cannot be negative")
        result = self.scripts.set_reorder_level(keys.inventory_key(product_id), reorder_level)
        if result[0] == "MISSING":
            raise InventoryRecordNotFoundError(product_id)

    # Reporting

    def all_records(self) -> List[InventoryRecord]:
        records = []
        for product_id in sorted(self.redis.smembers(keys.INVENTORY_INDEX_KEY)):
            data = self.redis.hgetall(keys.inventory_key(product_id))
            if data:
                records.append(self._to_record(product_id, data))
        return records

    def low_stock(self, product_ids: Optional[Iterable[str]] = None) -> List[InventoryRecord]:
        """Records at or below their reorder level, optionally limited to product_ids"""
        if product_ids is None:
            records = self.all_records()
        else:
            records = []
            for product_id in product_ids:
                data = self.redis.hgetall(keys.inventory_key(product_id))
                if data:
                    records.append(self._to_record(product_id, data))
        return [record for record in records if record.is_low_stock]

    def out_of_stock(self) -> List[InventoryRecord]:
        return [record for record in self.all_records() if record.is_out_of_stock]

    def statistics(self) -> InventoryStatistics:
        records = self.all_records()
        return InventoryStatistics(
            product_count=len(records),
            low_stock_count=sum(1 for r in records if r.is_low_stock),
            out_of_stock_count=sum(1 for r in records if r.is_out_of_stock),
            total_available=sum(r.quantity_available for r in records),
            total_reserved=sum(r.quantity_reserved for r in records),
        )

    @staticmethod
    def _to_record(product_id: str, data: dict) -> InventoryRecord:
        return InventoryRecord(
            product_id=product_id,
            quantity_available=int(data.get("available", 0)),
            quantity_reserved=int(data.get("reserved", 0)),
            reorder_level=int(data.get("reorder_level", 0)),
        )
