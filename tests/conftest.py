from decimal import Decimal

import fakeredis
import pytest

from shopcore.cart_service import CartService
from shopcore.catalog import RedisCatalog
from shopcore.events import EventPublisher
from shopcore.inventory_ledger import InventoryLedger
from shopcore.merge_service import CartMergeService
from shopcore.models import Owner
from shopcore.order_history import OrderHistoryLog
from shopcore.order_service import OrderService
from shopcore.redis_client import RedisClient


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(fake_server):
    return RedisClient(client=fakeredis.FakeRedis(server=fake_server, decode_responses=True))


@pytest.fixture
def events(redis_client):
    return EventPublisher(redis_client)


@pytest.fixture
def ledger(redis_client):
    return InventoryLedger(redis_client)


@pytest.fixture
def carts(redis_client):
    return CartService(redis_client)


@pytest.fixture
def catalog(redis_client):
    return RedisCatalog(redis_client)


@pytest.fixture
def merger(redis_client, events):
    return CartMergeService(redis_client, events)


@pytest.fixture
def orders(redis_client, ledger, carts, catalog, events):
    return OrderService(redis_client, ledger, carts, catalog, events)


@pytest.fixture
def history(redis_client):
    return OrderHistoryLog(redis_client)


@pytest.fixture
def stock(ledger, catalog):
    """Create an inventory record and catalog entry for a product"""
    def _stock(product_id, quantity, price="10.00", reorder_level=0):
        ledger.create_record(product_id, quantity, reorder_level)
        catalog.put_entry(product_id, f"SKU-{product_id}", Decimal(price))
    return _stock


@pytest.fixture
def alice():
    return Owner.user("alice")


@pytest.fixture
def guest():
    return Owner.guest("sess-123")
