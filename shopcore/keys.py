"""
Redis key layout.

    inventory:<product_id>          hash  available / reserved / reorder_level
    inventory:products              set   product ids with a record
    product:<product_id>            hash  sku / price (catalog, read only)
    cart:<owner_key>                hash  product_id -> quantity
    cart:<owner_key>:added          zset  product_id scored by first-add time
    carts:guest                     set   guest session tokens holding lines
    order:<order_id>                str   order JSON document
    order:<order_id>:history        list  status history entries, oldest first
    order_number:<order_number>     str   order id
    orders:owner:<owner_key>        zset  order ids scored by creation time
    orders:status:<STATUS>          zset  order ids scored by last update time
    orders:created                  zset  every order id scored by creation time
    op:<operation_id>               list  stored reply of an applied script, short TTL
"""
from shopcore.models import Owner, OrderStatus

INVENTORY_INDEX_KEY = "inventory:products"
GUEST_CART_INDEX_KEY = "carts:guest"
ORDERS_BY_CREATION_KEY = "orders:created"


def inventory_key(product_id: str) -> str:
    return f"inventory:{product_id}"


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


def cart_lines_key(owner: Owner) -> str:
    return f"cart:{owner.key}"


def cart_added_key(owner: Owner) -> str:
    return f"cart:{owner.key}:added"


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def order_history_key(order_id: str) -> str:
    return f"order:{order_id}:history"


def order_number_key(order_number: str) -> str:
    return f"order_number:{order_number}"


def owner_orders_key(owner: Owner) -> str:
    return f"orders:owner:{owner.key}"


def status_index_key(status: OrderStatus) -> str:
    return f"orders:status:{status.value}"


def operation_key(operation_id: str) -> str:
    return f"op:{operation_id}"
