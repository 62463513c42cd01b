"""
A script can run on the server and still fail on the client when the reply is
lost. The client retries; these tests check the retry does not apply the
writes a second time.
"""
from decimal import Decimal

import fakeredis
import pytest
from redis.exceptions import TimeoutError

from shopcore import keys
from shopcore.cart_service import CartService
from shopcore.catalog import RedisCatalog
from shopcore.events import EventPublisher
from shopcore.inventory_ledger import InventoryLedger
from shopcore.merge_service import CartMergeService
from shopcore.models import OrderStatus, Owner
from shopcore.order_service import OrderService
from shopcore.redis_client import RedisClient


class LossyRedis(fakeredis.FakeRedis):
    """Runs EVAL on the server, then drops the reply while ``drops`` is positive"""

    drops = 0

    def eval(self, *args, **kwargs):
        result = super().eval(*args, **kwargs)
        if self.drops > 0:
            self.drops -= 1
            raise TimeoutError("Timeout reading from socket")
        return result


@pytest.fixture
def lossy(fake_server):
    return LossyRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def lossy_client(lossy):
    return RedisClient(client=lossy)


@pytest.fixture
def lossy_ledger(lossy_client):
    return InventoryLedger(lossy_client)


def counters(ledger, product_id):
    record = ledger.get_record(product_id)
    return record.quantity_available, record.quantity_reserved


def test_reserve_is_applied_once(lossy, lossy_ledger):
    lossy_ledger.create_record("P1", 10)

    lossy.drops = 1
    lossy_ledger.reserve([("P1", 2)])

    assert counters(lossy_ledger, "P1") == (8, 2)


def test_release_is_applied_once(lossy, lossy_ledger):
    lossy_ledger.create_record("P1", 10)
    lossy_ledger.reserve([("P1", 4)])

    lossy.drops = 1
    lossy_ledger.release([("P1", 4)])

    assert counters(lossy_ledger, "P1") == (10, 0)


def test_receiving_stock_is_applied_once(lossy, lossy_ledger):
    lossy_ledger.create_record("P1", 1)

    lossy.drops = 1
    assert lossy_ledger.add_stock("P1", 5) == 6

    assert counters(lossy_ledger, "P1") == (6, 0)


def test_creating_a_record_reports_success(lossy, lossy_ledger):
    lossy.drops = 1
    record = lossy_ledger.create_record("P1", 3)

    assert record.quantity_available == 3


def test_cart_increment_is_applied_once(lossy, lossy_client):
    carts = CartService(lossy_client)
    guest = Owner.guest("sess-lossy")

    lossy.drops = 1
    assert carts.add_or_increment(guest, "P1", 2) == 2

    assert carts.total_quantity(guest) == 2
    assert guest.id in lossy.smembers(keys.GUEST_CART_INDEX_KEY)


def test_merge_is_reported_once(lossy, lossy_client):
    carts = CartService(lossy_client)
    merger = CartMergeService(lossy_client, EventPublisher(lossy_client))
    guest = Owner.guest("sess-lossy")
    user = Owner.user("u-lossy")
    carts.add_or_increment(guest, "A", 2)

    lossy.drops = 1
    result = merger.merge(guest.id, user.id)

    assert result.moved == 1
    assert carts.total_quantity(user) == 2


@pytest.fixture
def lossy_orders(lossy_client, lossy_ledger):
    catalog = RedisCatalog(lossy_client)
    catalog.put_entry("P1", "SKU-P1", Decimal("5.00"))
    lossy_ledger.create_record("P1", 10)
    return OrderService(
        lossy_client, lossy_ledger, CartService(lossy_client), catalog, EventPublisher(lossy_client)
    )


def test_checkout_creates_one_order(lossy, lossy_orders, lossy_ledger, monkeypatch):
    alice = Owner.user("alice")
    lossy_orders.carts.add_or_increment(alice, "P1", 2)

    # Reply to the order write is lost; the reservation reply arrives
    original = lossy_orders.scripts.create_order

    def lose_reply(**kwargs):
        lossy.drops = 1
        return original(**kwargs)

    monkeypatch.setattr(lossy_orders.scripts, "create_order", lose_reply)
    order = lossy_orders.create_order(alice)

    assert [o.id for o in lossy_orders.orders_for(alice)] == [order.id]
    assert counters(lossy_ledger, "P1") == (8, 2)
    assert lossy_orders.carts.lines_for(alice) == []


def test_transition_with_lost_reply_settles_once(lossy, lossy_orders, lossy_ledger):
    alice = Owner.user("alice")
    lossy_orders.carts.add_or_increment(alice, "P1", 3)
    order = lossy_orders.create_order(alice)

    lossy.drops = 1
    cancelled = lossy_orders.cancel(order.id)

    assert cancelled.status is OrderStatus.CANCELLED
    assert lossy_orders.get_order(order.id).status is OrderStatus.CANCELLED
    assert counters(lossy_ledger, "P1") == (10, 0)
