"""
Admin reporting over orders created inside a period.

Orders are selected by creation time from the ``orders:created`` index.
Revenue only counts orders that have shipped (SHIPPED or DELIVERED).
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

from shopcore import keys
from shopcore.exceptions import ValidationError
from shopcore.models import (
    DailySales,
    Order,
    OrderStatistics,
    OrderStatus,
    ProductSales,
    SalesReport,
    as_utc,
    utcnow,
)
from shopcore.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)

REVENUE_STATUSES = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})
DEFAULT_PERIOD = timedelta(days=30)
TOP_PRODUCTS_LIMIT = 10
LOAD_BATCH_SIZE = 200

CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _average(total: Decimal, count: int) -> Decimal:
    if count == 0:
        return _money(Decimal("0"))
    return _money(total / count)


class OrderReports:

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()

    def _period(self, start: Optional[datetime], end: Optional[datetime]) -> Tuple[datetime, datetime]:
        """Both bounds inclusive; defaults to the last 30 days. Naive datetimes are UTC"""
        end = as_utc(end) if end is not None else utcnow()
        start = as_utc(start) if start is not None else end - DEFAULT_PERIOD
        if start > end:
            raise ValidationError(f"Report start {start.isoformat()} is after end {end.isoformat()}")
        return start, end

    def orders_created_between(self, start: datetime, end: datetime) -> List[Order]:
        """Orders created in ``[start, end]``, oldest first"""
        order_ids = self.redis.zrangebyscore(
            keys.ORDERS_BY_CREATION_KEY, as_utc(start).timestamp(), as_utc(end).timestamp()
        )

        orders = []
        for offset in range(0, len(order_ids), LOAD_BATCH_SIZE):
            batch = order_ids[offset:offset + LOAD_BATCH_SIZE]
            raw_orders = self.redis.mget([keys.order_key(order_id) for order_id in batch])
            orders.extend(Order.model_validate_json(raw) for raw in raw_orders if raw is not None)
        return orders

    def statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> OrderStatistics:
        """
        Order counts per status and shipped revenue for the period.

        ``average_order_value`` spreads the revenue over every order in the
        period, so unshipped orders pull it down.
        """
        start, end = self._period(start, end)
        orders = self.orders_created_between(start, end)

        by_status = {status: 0 for status in OrderStatus}
        revenue = Decimal("0")
        for order in orders:
            by_status[order.status] += 1
            if order.status in REVENUE_STATUSES:
                revenue += order.subtotal

        return OrderStatistics(
            start=start,
            end=end,
            total_orders=len(orders),
            orders_by_status=by_status,
            total_revenue=_money(revenue),
            average_order_value=_average(revenue, len(orders))
        )

    def sales_report(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> SalesReport:
        """Shipped revenue for the period with best selling products and a daily breakdown"""
        start, end = self._period(start, end)
        sold = [order for order in self.orders_created_between(start, end) if order.status in REVENUE_STATUSES]

        products: "OrderedDict[str, ProductSales]" = OrderedDict()
        daily: "OrderedDict" = OrderedDict()
        total = Decimal("0")

        for order in sold:
            total += order.subtotal
            day = as_utc(order.created_at).date()
            count, day_revenue = daily.get(day, (0, Decimal("0")))
            daily[day] = (count + 1, day_revenue + order.subtotal)

            for line in order.lines:
                entry = products.get(line.product_id)
                if entry is None:
                    entry = ProductSales(product_id=line.product_id, sku=line.sku, quantity=0, revenue=Decimal("0"))
                    products[line.product_id] = entry
                entry.quantity += line.quantity
                entry.revenue += line.line_total

        top = sorted(products.values(), key=lambda entry: (-entry.revenue, entry.product_id))[:TOP_PRODUCTS_LIMIT]
        for entry in top:
            entry.revenue = _money(entry.revenue)

        logger.info(
            f"Sales report {start.date()}..{end.date()}: {len(sold)} orders, total {_money(total)}"
        )
        return SalesReport(
            start=start,
            end=end,
            total_sales=_money(total),
            total_orders=len(sold),
            average_order_value=_average(total, len(sold)),
            top_products=top,
            daily=[
                DailySales(day=day, orders=count, revenue=_money(day_revenue))
                for day, (count, day_revenue) in sorted(daily.items())
            ]
        )
