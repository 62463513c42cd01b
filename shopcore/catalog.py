"""
Catalog lookup used at checkout to freeze line prices and skus.

The catalog itself is owned by another service; this module only reads the
``product:<id>`` hashes that service maintains.
"""
from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Optional

from shopcore import keys
from shopcore.exceptions import CatalogLookupError
from shopcore.redis_client import RedisClient, get_redis_client


class CatalogEntry(NamedTuple):
    product_id: str
    sku: str
    price: Decimal


class Catalog:
    """Interface for current price lookups"""

    def get_entry(self, product_id: str) -> CatalogEntry:
        raise NotImplementedError


class RedisCatalog(Catalog):

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()

    def get_entry(self, product_id: str) -> CatalogEntry:
        data = self.redis.hgetall(keys.product_key(product_id))
        if not data or "price" not in data:
            raise CatalogLookupError(product_id)
        try:
            price = Decimal(data["price"])
        except InvalidOperation as e:
            raise CatalogLookupError(product_id) from e
        return CatalogEntry(product_id=product_id, sku=data.get("sku") or product_id, price=price)

    def put_entry(self, product_id: str, sku: str, price: Decimal) -> None:
        """Seed a catalog entry (fixtures and local development)"""
        self.redis.hset(keys.product_key(product_id), mapping={"sku": sku, "price": str(price)})
