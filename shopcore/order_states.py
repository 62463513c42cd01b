"""
Order status transition table.

    PENDING    -> CONFIRMED, CANCELLED
    CONFIRMED  -> PROCESSING, CANCELLED
    PROCESSING -> SHIPPED
    SHIPPED    -> DELIVERED
    DELIVERED  -> REFUNDED (payment must be PAID)

CANCELLED and REFUNDED accept nothing. DELIVERED accepts only the refund edge.
"""
from typing import Dict, FrozenSet, Optional

from shopcore.models import OrderStatus, PaymentStatus

INITIAL_STATUS = OrderStatus.PENDING

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED})

CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})

# Stock is still held as reserved in these states
RESERVED_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})


def is_transition_allowed(
    current: Optional[OrderStatus],
    target: OrderStatus,
    payment_status: PaymentStatus = PaymentStatus.UNPAID
) -> bool:
    """Whether ``current -> target`` is permitted given the payment status"""
    if current is None:
        return target is INITIAL_STATUS
    if target not in TRANSITIONS[current]:
        return False
    if target is OrderStatus.REFUNDED:
        return payment_status is PaymentStatus.PAID
    return True


def denial_reason(current: OrderStatus, target: OrderStatus, payment_status: PaymentStatus) -> str:
    if not TRANSITIONS[current]:
        return f"Order is {current.value} and accepts no further transitions"
    if target is OrderStatus.REFUNDED and target in TRANSITIONS[current]:
        return f"Only paid orders can be refunded (payment is {payment_status.value})"
    if target is OrderStatus.CANCELLED:
        return f"Order can no longer be cancelled once {current.value}"
    return f"Invalid status transition from {current.value} to {target.value}"


def is_cancellable(status: OrderStatus) -> bool:
    return status in CANCELLABLE_STATUSES


def is_refundable(status: OrderStatus, payment_status: PaymentStatus) -> bool:
    return is_transition_allowed(status, OrderStatus.REFUNDED, payment_status)
