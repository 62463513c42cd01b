"""
Custom exceptions for the order-processing core.
"""
from typing import Optional


class ShopCoreError(Exception):
    """Base exception for core operations"""
    pass


class ValidationError(ShopCoreError):
    """Raised when validation fails"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class LimitExceededError(ShopCoreError):
    """Raised when cart limits are exceeded"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RedisConnectionError(ShopCoreError):
    """Raised when Redis connection fails"""
    pass


class ProductNotFoundError(ShopCoreError):
    """Raised when a product is not found in cart"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found in cart: {product_id}")


class InsufficientInventoryError(ShopCoreError):
    """Raised when a reservation cannot be satisfied; no counters were changed"""
    def __init__(self, product_id: str, requested: Optional[int] = None, available: Optional[int] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        detail = ""
        if requested is not None and available is not None:
            detail = f" (requested {requested}, available {available})"
        super().__init__(f"Insufficient inventory for product {product_id}{detail}")


class InventoryInvariantError(ShopCoreError):
    """Raised when a release or commit exceeds the reserved quantity"""
    def __init__(self, product_id: str, requested: int, reserved: int):
        self.product_id = product_id
        self.requested = requested
        self.reserved = reserved
        super().__init__(
            f"Cannot settle {requested} units of {product_id}: only {reserved} reserved"
        )


class InventoryRecordExistsError(ShopCoreError):
    """Raised when creating a record for a product that already has one"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Inventory record already exists: {product_id}")


class InventoryRecordNotFoundError(ShopCoreError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Inventory record not found: {product_id}")


class EmptyCartError(ShopCoreError):
    """Raised when checking out a cart with no lines"""
    def __init__(self, owner_key: str):
        self.owner_key = owner_key
        super().__init__("Cannot create an order from an empty cart")


class OrderNotFoundError(ShopCoreError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InvalidTransitionError(ShopCoreError):
    """Raised when a status change is not permitted; order state is unchanged"""
    def __init__(self, from_status, to_status, message: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message or f"Invalid status transition from {_label(from_status)} to {_label(to_status)}"
        )


class MergeFailedError(ShopCoreError):
    """Raised when a guest cart could not be merged; the guest cart is left intact"""
    def __init__(self, guest_session_id: str, message: str):
        self.guest_session_id = guest_session_id
        self.message = message
        super().__init__(message)


class CatalogLookupError(ShopCoreError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"No catalog entry for product: {product_id}")


class OperationTimeoutError(ShopCoreError):
    """Raised when a caller-imposed deadline passes mid-operation"""
    pass


def _label(status) -> str:
    return getattr(status, "value", None) or str(status)


class ConcurrentModificationError(ShopCoreError):
    """Raised when an optimistic update keeps losing to concurrent writers"""
    def __init__(self, order_id: str, attempts: int):
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"Order {order_id} changed concurrently; gave up after {attempts} attempts")


class OrderPersistenceError(ShopCoreError):
    pass
