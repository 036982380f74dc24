"""
Order Service — Order state machine

Status flow:
    PLACED → CONFIRMED → PREPARING → READY → PICKED_UP → DELIVERED
       └──────────┴───────────┴────────┴──→ CANCELLED   (only before PICKED_UP)

Status only moves forward. Skipping ahead is allowed (a delivery event can
jump READY → DELIVERED if the pickup event was never sent), going back is
not. Re-applying the current status is a no-op, which keeps the event
handlers idempotent under redelivery.
"""

from enum import Enum

from services.shared.errors import InvalidTransitionError, ValidationError

DEFAULT_DELIVERY_FEE = 50.0
DEFAULT_DISCOUNT = 0.0


class OrderStatus(str, Enum):
    PLACED = "PLACED"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    PICKED_UP = "PICKED_UP"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


FORWARD = [
    OrderStatus.PLACED,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.PICKED_UP,
    OrderStatus.DELIVERED,
]

_PAYMENT_NEXT = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

# Order status implied by a payment outcome.
PAYMENT_OUTCOME = {
    PaymentStatus.COMPLETED: OrderStatus.CONFIRMED,
    PaymentStatus.FAILED: OrderStatus.CANCELLED,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    if current in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
        return False
    if target == OrderStatus.CANCELLED:
        return FORWARD.index(current) < FORWARD.index(OrderStatus.PICKED_UP)
    return FORWARD.index(target) > FORWARD.index(current)


def check_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move order from {current.value} to {target.value}"
        )


def check_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if target not in _PAYMENT_NEXT[current]:
        raise InvalidTransitionError(
            f"Cannot move payment status from {current.value} to {target.value}"
        )


def is_before(current: OrderStatus, target: OrderStatus) -> bool:
    """True when `current` is an earlier, non-terminal step than `target`."""
    if current == OrderStatus.CANCELLED or target == OrderStatus.CANCELLED:
        return False
    return FORWARD.index(current) < FORWARD.index(target)


def price_items(items: list[dict], delivery_fee: float | None, discount: float | None) -> dict:
    """
    Compute line subtotals and order totals.

    final_amount = sum(subtotals) + delivery_fee - discount
    """
    if not items:
        raise ValidationError("Order must contain at least one item")

    priced = []
    total = 0.0
    for item in items:
        if item["quantity"] <= 0:
            raise ValidationError(f"Quantity must be positive for menu item {item['menu_item_id']}")
        if item["price"] < 0:
            raise ValidationError(f"Price must not be negative for menu item {item['menu_item_id']}")
        subtotal = round(item["price"] * item["quantity"], 2)
        priced.append({**item, "subtotal": subtotal})
        total += subtotal

    fee = DEFAULT_DELIVERY_FEE if delivery_fee is None else delivery_fee
    off = DEFAULT_DISCOUNT if discount is None else discount
    if fee < 0 or off < 0:
        raise ValidationError("Delivery fee and discount must not be negative")

    total = round(total, 2)
    return {
        "items": priced,
        "total_amount": total,
        "delivery_fee": fee,
        "discount": off,
        "final_amount": round(total + fee - off, 2),
    }
