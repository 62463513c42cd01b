"""
FastAPI application exposing the cart, inventory and order core.
"""
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shopcore.attention_scanner import AttentionScanner
from shopcore.cart_service import CartService
from shopcore.catalog import RedisCatalog
from shopcore.config import Config
from shopcore.events import EventPublisher
from shopcore.exceptions import (
    CatalogLookupError,
    ConcurrentModificationError,
    EmptyCartError,
    InsufficientInventoryError,
    InvalidTransitionError,
    InventoryInvariantError,
    InventoryRecordExistsError,
    InventoryRecordNotFoundError,
    LimitExceededError,
    MergeFailedError,
    OperationTimeoutError,
    OrderNotFoundError,
    ProductNotFoundError,
    RedisConnectionError,
    ShopCoreError,
    ValidationError,
)
from shopcore.inventory_ledger import InventoryLedger
from shopcore.merge_service import CartMergeService
from shopcore.middleware import RequestLoggingMiddleware, logger
from shopcore.models import (
    CartItemRequest,
    InventoryCreateRequest,
    MergeCartRequest,
    OrderResponse,
    OrderStatus,
    Owner,
    PaymentUpdateRequest,
    ReorderLevelRequest,
    StockAdjustmentRequest,
    TransitionRequest,
    UpdateQuantityRequest,
)
from shopcore.order_history import OrderHistoryLog
from shopcore.order_reports import OrderReports
from shopcore.order_service import OrderService
from shopcore.redis_client import RedisClient, get_redis_client

_services: Optional["Services"] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _services is not None:
        _services.redis.close()


# Initialize FastAPI app
app = FastAPI(
    title="Shop Core API",
    description="Cart, inventory reservation and order lifecycle",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


class Services:
    """Core services sharing one Redis client"""

    def __init__(self, redis: RedisClient):
        self.redis = redis
        self.events = EventPublisher(redis)
        self.ledger = InventoryLedger(redis)
        self.carts = CartService(redis)
        self.merger = CartMergeService(redis, self.events)
        self.orders = OrderService(redis, self.ledger, self.carts, RedisCatalog(redis), self.events)
        self.history = OrderHistoryLog(redis)
        self.scanner = AttentionScanner(redis)
        self.reports = OrderReports(redis)


def get_services() -> Services:
    """Get or create the service container (singleton)"""
    global _services
    if _services is None:
        _services = Services(get_redis_client())
    return _services


def resolve_owner(
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="Authenticated user id"),
    session_id: Optional[str] = Header(None, alias="X-Session-ID", description="Guest session token")
) -> Owner:
    """Authenticated user wins over a guest session"""
    if user_id and user_id.strip():
        return Owner.user(user_id.strip())
    if session_id and session_id.strip():
        return Owner.guest(session_id.strip())
    raise HTTPException(status_code=400, detail="X-User-ID or X-Session-ID header is required")


@app.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Always 200; reports Redis reachability and latency"""
    ping_start = time.time()
    redis_ok = services.redis.ping()
    return {
        "status": "healthy",
        "service": "shopcore",
        "redis": {
            "status": "healthy" if redis_ok else "unhealthy",
            "latency_ms": round((time.time() - ping_start) * 1000, 2) if redis_ok else None
        },
        "timestamp": time.time()
    }


# Cart endpoints
@app.get("/cart")
def get_cart(owner: Owner = Depends(resolve_owner), services: Services = Depends(get_services)):
    return services.carts.get_cart(owner)


@app.post("/cart/items")
def add_cart_item(
    request: CartItemRequest,
    owner: Owner = Depends(resolve_owner),
    services: Services = Depends(get_services)
):
    quantity = services.carts.add_or_increment(owner, request.product_id, request.quantity)
    return {"success": True, "product_id": request.product_id, "quantity": quantity}


@app.put("/cart/items/{product_id}")
def update_cart_item(
    product_id: str,
    request: UpdateQuantityRequest,
    owner: Owner = Depends(resolve_owner),
    services: Services = Depends(get_services)
):
    quantity = services.carts.set_quantity(owner, product_id, request.quantity)
    return {"success": True, "product_id": product_id, "quantity": quantity}


@app.delete("/cart/items/{product_id}")
def remove_cart_item(
    product_id: str,
    owner: Owner = Depends(resolve_owner),
    services: Services = Depends(get_services)
):
    if not services.carts.remove(owner, product_id):
        raise ProductNotFoundError(product_id)
    return {"success": True, "product_id": product_id}


@app.delete("/cart")
def clear_cart(owner: Owner = Depends(resolve_owner), services: Services = Depends(get_services)):
    services.carts.clear(owner)
    return {"success": True}


@app.get("/cart/availability")
def cart_availability(owner: Owner = Depends(resolve_owner), services: Services = Depends(get_services)):
    return services.carts.validate_availability(owner, services.ledger)


@app.post("/cart/merge")
def merge_carts(request: MergeCartRequest, services: Services = Depends(get_services)):
    """Fold a guest cart into the user's cart at login"""
    result = services.merger.merge(request.guest_session_id, request.user_id)
    return {"success": True, **result.model_dump()}


# Inventory endpoints
@app.get("/inventory/statistics")
def inventory_statistics(services: Services = Depends(get_services)):
    return services.ledger.statistics()


@app.get("/inventory/low-stock")
def low_stock(services: Services = Depends(get_services)):
    return services.ledger.low_stock()


@app.get("/inventory/{product_id}")
def get_inventory(product_id: str, services: Services = Depends(get_services)):
    return services.ledger.get_record(product_id)


@app.get("/inventory/{product_id}/availability")
def check_availability(
    product_id: str,
    quantity: int = Query(1, ge=1),
    services: Services = Depends(get_services)
):
    return {
        "product_id": product_id,
        "quantity": quantity,
        "available": services.ledger.is_available(product_id, quantity)
    }


@app.post("/inventory", status_code=201)
def create_inventory_record(request: InventoryCreateRequest, services: Services = Depends(get_services)):
    return services.ledger.create_record(request.product_id, request.quantity, request.reorder_level)


@app.post("/inventory/{product_id}/receive")
def receive_stock(product_id: str, request: StockAdjustmentRequest, services: Services = Depends(get_services)):
    available = services.ledger.add_stock(product_id, request.quantity)
    return {"product_id": product_id, "quantity_available": available}


@app.post("/inventory/{product_id}/write-off")
def write_off_stock(product_id: str, request: StockAdjustmentRequest, services: Services = Depends(get_services)):
    available = services.ledger.remove_stock(product_id, request.quantity)
    return {"product_id": product_id, "quantity_available": available}


@app.put("/inventory/{product_id}/reorder-level")
def update_reorder_level(product_id: str, request: ReorderLevelRequest, services: Services = Depends(get_services)):
    services.ledger.set_reorder_level(product_id, request.reorder_level)
    return services.ledger.get_record(product_id)


# Maintenance
@app.post("/maintenance/guest-carts/purge")
def purge_guest_carts(
    older_than_days: Optional[int] = Query(None, ge=1, description="Defaults to GUEST_CART_RETENTION_DAYS"),
    services: Services = Depends(get_services)
):
    days = older_than_days or Config.GUEST_CART_RETENTION_DAYS
    removed = services.carts.purge_expired_guest_carts(timedelta(days=days))
    return {"removed_lines": removed, "older_than_days": days}


# Order endpoints
@app.post("/orders", status_code=201)
def create_order(
    timeout: Optional[float] = Query(None, gt=0, description="Deadline in seconds"),
    owner: Owner = Depends(resolve_owner),
    services: Services = Depends(get_services)
):
    order = services.orders.create_order(owner, timeout=timeout)
    return OrderResponse.from_order(order)


@app.get("/orders")
def list_orders(
    status: Optional[OrderStatus] = Query(None, description="Only orders currently in this status"),
    since: Optional[datetime] = Query(None, description="Only orders created at or after this time"),
    owner: Owner = Depends(resolve_owner),
    services: Services = Depends(get_services)
):
    orders = services.orders.orders_for(owner, status=status, since=since)
    return [OrderResponse.from_order(order) for order in orders]


@app.get("/orders/recent")
def recent_orders(
    days: int = Query(30, ge=1, le=365),
    owner: Owner = Depends(resolve_owner),
    services: Services = Depends(get_services)
):
    return [OrderResponse.from_order(order) for order in services.orders.recent_orders(owner, days=days)]


@app.get("/orders/cancellable")
def cancellable_orders(owner: Owner = Depends(resolve_owner), services: Services = Depends(get_services)):
    return [OrderResponse.from_order(order) for order in services.orders.find_cancellable(owner)]


@app.get("/orders/refundable")
def refundable_orders(owner: Owner = Depends(resolve_owner), services: Services = Depends(get_services)):
    return [OrderResponse.from_order(order) for order in services.orders.find_refundable(owner)]


@app.get("/orders/attention")
def attention_orders(
    cutoff: Optional[datetime] = Query(None, description="PROCESSING orders not updated since this time"),
    services: Services = Depends(get_services)
):
    if cutoff is None:
        orders = services.scanner.scan()
    else:
        orders = services.scanner.find_requiring_attention(cutoff)
    return [OrderResponse.from_order(order) for order in orders]


@app.get("/orders/statistics")
def order_statistics(services: Services = Depends(get_services)):
    return {status.value: count for status, count in services.orders.status_counts().items()}


# Reporting endpoints
@app.get("/reports/orders")
def order_report(
    start: Optional[datetime] = Query(None, description="Period start, default 30 days before end"),
    end: Optional[datetime] = Query(None, description="Period end, default now"),
    services: Services = Depends(get_services)
):
    return services.reports.statistics(start, end)


@app.get("/reports/sales")
def sales_report(
    start: Optional[datetime] = Query(None, description="Period start, default 30 days before end"),
    end: Optional[datetime] = Query(None, description="Period end, default now"),
    services: Services = Depends(get_services)
):
    return services.reports.sales_report(start, end)


@app.get("/orders/{order_id}")
def get_order(order_id: str, services: Services = Depends(get_services)):
    return OrderResponse.from_order(services.orders.get_order(order_id))


@app.get("/orders/{order_id}/history")
def get_order_history(order_id: str, services: Services = Depends(get_services)):
    services.orders.get_order(order_id)
    return services.history.entries_for(order_id)


@app.post("/orders/{order_id}/transitions")
def transition_order(order_id: str, request: TransitionRequest, services: Services = Depends(get_services)):
    order = services.orders.transition(order_id, request.target_status, request.actor, request.reason)
    return OrderResponse.from_order(order)


@app.post("/orders/{order_id}/payment")
def update_payment(order_id: str, request: PaymentUpdateRequest, services: Services = Depends(get_services)):
    order = services.orders.record_payment(order_id, request.payment_status)
    return OrderResponse.from_order(order)


# Error handlers
def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc):
    return _error(400, "Validation error", exc)


@app.exception_handler(LimitExceededError)
async def limit_exceeded_handler(request, exc):
    return _error(400, "Limit exceeded", exc)


@app.exception_handler(ProductNotFoundError)
async def product_not_found_handler(request, exc):
    return _error(404, "Product not found", exc)


@app.exception_handler(InventoryRecordExistsError)
async def inventory_exists_handler(request, exc):
    return _error(409, "Inventory record exists", exc)


@app.exception_handler(InventoryRecordNotFoundError)
async def inventory_not_found_handler(request, exc):
    return _error(404, "Inventory record not found", exc)


@app.exception_handler(OrderNotFoundError)
async def order_not_found_handler(request, exc):
    return _error(404, "Order not found", exc)


@app.exception_handler(InsufficientInventoryError)
async def insufficient_inventory_handler(request, exc):
    return JSONResponse(
        status_code=409,
        content={"error": "Insufficient inventory", "message": str(exc), "product_id": exc.product_id}
    )


@app.exception_handler(EmptyCartError)
async def empty_cart_handler(request, exc):
    return _error(409, "Empty cart", exc)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request, exc):
    return _error(409, "Invalid transition", exc)


@app.exception_handler(InventoryInvariantError)
async def inventory_invariant_handler(request, exc):
    logger.error(f"Inventory invariant violated: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Inventory invariant violated", "message": str(exc), "product_id": exc.product_id}
    )


@app.exception_handler(MergeFailedError)
async def merge_failed_handler(request, exc):
    return _error(409, "Merge failed", exc)


@app.exception_handler(ConcurrentModificationError)
async def concurrent_modification_handler(request, exc):
    return _error(409, "Concurrent modification", exc)


@app.exception_handler(CatalogLookupError)
async def catalog_lookup_handler(request, exc):
    return _error(422, "Catalog lookup failed", exc)


@app.exception_handler(OperationTimeoutError)
async def timeout_handler(request, exc):
    return _error(504, "Timed out", exc)


@app.exception_handler(RedisConnectionError)
async def redis_error_handler(request, exc):
    return JSONResponse(
        status_code=503,
        content={"error": "Service unavailable", "message": "Redis connection failed"}
    )


@app.exception_handler(ShopCoreError)
async def core_error_handler(request, exc):
    logger.error(f"Unmapped core error: {type(exc).__name__}: {exc}")
    return _error(500, "Internal server error", exc)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
