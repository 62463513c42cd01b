"""
Pydantic models for carts, inventory, orders and API requests/responses.
"""
import hashlib
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware datetimes are converted to UTC; naive ones are taken to be UTC already"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OwnerKind(str, Enum):
    USER = "user"
    GUEST = "guest"


class Owner(BaseModel):
    """Cart/order owner: a registered user or a guest session, never both"""
    model_config = ConfigDict(frozen=True)

    kind: OwnerKind = Field(..., description="Owner type")
    id: str = Field(..., min_length=1, description="User id or guest session token")

    @classmethod
    def user(cls, user_id) -> "Owner":
        return cls(kind=OwnerKind.USER, id=str(user_id))

    @classmethod
    def guest(cls, session_token: str) -> "Owner":
        return cls(kind=OwnerKind.GUEST, id=session_token)

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @property
    def is_guest(self) -> bool:
        return self.kind is OwnerKind.GUEST

    @property
    def log_id(self) -> str:
        """Hashed key for logging (no PII)"""
        return hashlib.sha256(self.key.encode()).hexdigest()[:8]


class CartLine(BaseModel):
    """Cart line model"""
    owner: Owner
    product_id: str = Field(..., min_length=1, description="Product identifier")
    quantity: int = Field(..., ge=1, description="Line quantity")
    added_at: datetime = Field(..., description="When the line was first added")


class CartResponse(BaseModel):
    """Response model for cart retrieval"""
    owner_key: str = Field(..., description="Owner key, e.g. user:42 or guest:<token>")
    lines: List[CartLine] = Field(default_factory=list, description="Most recently added first")
    total_quantity: int = Field(0, description="Sum of line quantities")


class LineAvailability(BaseModel):
    product_id: str
    requested: int
    available: int
    is_available: bool


class MergeResult(BaseModel):
    """Outcome of folding a guest cart into a user cart"""
    moved: int = Field(0, description="Guest lines reassigned to the user unchanged")
    conflicts: int = Field(0, description="Products present in both carts")
    capped: int = Field(0, description="Conflicts whose summed quantity was capped")
    dropped: int = Field(0, description="Conflicts removed because nothing was available")


class InventoryRecord(BaseModel):
    """Per-product stock counters"""
    product_id: str
    quantity_available: int = Field(0, ge=0)
    quantity_reserved: int = Field(0, ge=0)
    reorder_level: int = Field(0, ge=0)

    @computed_field
    @property
    def total_on_hand(self) -> int:
        return self.quantity_available + self.quantity_reserved

    @computed_field
    @property
    def is_low_stock(self) -> bool:
        return self.quantity_available <= self.reorder_level

    @computed_field
    @property
    def is_out_of_stock(self) -> bool:
        return self.quantity_available == 0


class InventoryStatistics(BaseModel):
    product_count: int = 0
    low_stock_count: int = 0
    out_of_stock_count: int = 0
    total_available: int = 0
    total_reserved: int = 0


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class OrderLine(BaseModel):
    """Order line with sku and price frozen at checkout"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    sku: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    id: str
    order_number: str
    owner: Owner
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    lines: List[OrderLine] = Field(..., min_length=1)
    created_at: datetime
    updated_at: datetime

    @property
    def subtotal(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0"))

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    def stock_lines(self) -> List[tuple]:
        return [(line.product_id, line.quantity) for line in self.lines]


class OrderStatusHistoryEntry(BaseModel):
    order_id: str
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    changed_by: str = Field(..., description="Actor id or 'system'")
    reason: Optional[str] = None
    created_at: datetime


# API request models

class CartItemRequest(BaseModel):
    """Request model for adding items to a cart"""
    product_id: str = Field(..., min_length=1, description="Product identifier")
    quantity: int = Field(1, description="Quantity delta; may be negative while the line stays >= 1")

    @field_validator('quantity')
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v == 0:
            raise ValueError("Quantity delta cannot be zero")
        return v


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=0, description="New quantity; 0 removes the line")


class MergeCartRequest(BaseModel):
    """Request model for merging a guest cart on login"""
    guest_session_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class TransitionRequest(BaseModel):
    target_status: OrderStatus
    actor: str = Field("system", min_length=1)
    reason: Optional[str] = Field(None, max_length=500)


class PaymentUpdateRequest(BaseModel):
    payment_status: PaymentStatus


class InventoryCreateRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(0, ge=0, description="Initial available units")
    reorder_level: int = Field(0, ge=0)


class StockAdjustmentRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class ReorderLevelRequest(BaseModel):
    reorder_level: int = Field(..., ge=0)


class OrderResponse(BaseModel):
    order: Order
    subtotal: Decimal
    total_quantity: int

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(order=order, subtotal=order.subtotal, total_quantity=order.total_quantity)


# Reporting models

class OrderStatistics(BaseModel):
    """Order counts and revenue for orders created inside a period"""
    start: datetime
    end: datetime
    total_orders: int = 0
    orders_by_status: Dict[OrderStatus, int] = Field(default_factory=dict)
    total_revenue: Decimal = Decimal("0.00")
    average_order_value: Decimal = Decimal("0.00")


class ProductSales(BaseModel):
    product_id: str
    sku: str
    quantity: int
    revenue: Decimal


class DailySales(BaseModel):
    day: date
    orders: int
    revenue: Decimal


class SalesReport(BaseModel):
    """Revenue report over SHIPPED and DELIVERED orders created inside a period"""
    start: datetime
    end: datetime
    total_sales: Decimal = Decimal("0.00")
    total_orders: int = 0
    average_order_value: Decimal = Decimal("0.00")
    top_products: List[ProductSales] = Field(default_factory=list)
    daily: List[DailySales] = Field(default_factory=list)
