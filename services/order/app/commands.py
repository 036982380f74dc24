"""
Order Service — Command handlers (write side)

Every command commits its local change first and publishes afterwards. The
bus never raises, so a broker outage can stall the saga for one order but
never rolls back a committed order.

Published to order-events:
    ORDER_CREATED          → payment service charges, notification says "placed"
    ORDER_STATUS_UPDATED   → notification
    ORDER_CANCELLED        → delivery service releases the partner
    PAYMENT_COMPLETED      → delivery service assigns a partner
    DELIVERY_ASSIGNED      → mirror of the delivery service's event
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.bus import EventBus
from services.shared.errors import InvalidStateError, NotFoundError, ValidationError
from services.shared.events import ORDER_EVENTS, EventType, OrderEvent

from . import queries
from .aggregate import (
    PAYMENT_OUTCOME,
    OrderStatus,
    PaymentStatus,
    can_transition,
    check_payment_transition,
    check_transition,
    is_before,
    price_items,
)
from .restaurant_client import RestaurantClient
from .schema import order_items, orders

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _event(order: dict, event_type: EventType) -> OrderEvent:
    return OrderEvent(
        event_type=event_type,
        order_id=order["id"],
        user_id=order["user_id"],
        restaurant_id=order["restaurant_id"],
        delivery_partner_id=order["delivery_partner_id"],
        amount=order["final_amount"],
        order_status=order["status"],
        payment_status=order["payment_status"],
    )


async def _publish(bus: EventBus, order: dict, event_type: EventType) -> None:
    await bus.publish(ORDER_EVENTS, str(order["id"]), _event(order, event_type))
    logger.info("Published %s for order %s", event_type.value, order["id"])


async def _load_for_update(session: AsyncSession, order_id: int):
    result = await session.execute(
        select(orders).where(orders.c.id == order_id).with_for_update()
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError(f"Order not found with ID: {order_id}")
    return row


async def create_order(
    session: AsyncSession,
    bus: EventBus,
    restaurants: RestaurantClient,
    *,
    user_id: int,
    restaurant_id: int,
    items: list[dict],
    delivery_fee: float | None = None,
    discount: float | None = None,
    address_id: int | None = None,
    special_instructions: str | None = None,
) -> dict:
    """
    Place an order.

    1. Check the restaurant through the circuit breaker (fallback: available)
    2. Price the line items
    3. Store the order as PLACED / PENDING
    4. Publish ORDER_CREATED
    """
    logger.info("Creating new order for user ID: %s", user_id)

    restaurant = await restaurants.get_restaurant(restaurant_id)
    if restaurant is None or not restaurant.available:
        logger.error("Restaurant %s is not available", restaurant_id)
        raise ValidationError("Restaurant is not available for orders")
    if restaurant.degraded:
        logger.warning("Restaurant %s accepted on fallback data", restaurant_id)

    priced = price_items(items, delivery_fee, discount)
    now = _now()

    result = await session.execute(
        insert(orders).values(
            user_id=user_id,
            restaurant_id=restaurant_id,
            address_id=address_id,
            special_instructions=special_instructions,
            total_amount=priced["total_amount"],
            delivery_fee=priced["delivery_fee"],
            discount=priced["discount"],
            final_amount=priced["final_amount"],
            status=OrderStatus.PLACED.value,
            payment_status=PaymentStatus.PENDING.value,
            order_time=now,
            updated_at=now,
        )
    )
    order_id = result.inserted_primary_key[0]
    await session.execute(
        insert(order_items),
        [
            {
                "order_id": order_id,
                "menu_item_id": item["menu_item_id"],
                "item_name": item.get("item_name") or "",
                "quantity": item["quantity"],
                "price": item["price"],
                "subtotal": item["subtotal"],
            }
            for item in priced["items"]
        ],
    )
    await session.commit()
    logger.info("Order created successfully with ID: %s", order_id)

    order = await queries.get_order(session, order_id)
    await _publish(bus, order, EventType.ORDER_CREATED)
    return order


async def update_status(
    session: AsyncSession,
    bus: EventBus,
    order_id: int,
    new_status: OrderStatus,
) -> dict:
    """Move the order along the state machine and publish ORDER_STATUS_UPDATED."""
    logger.info("Updating order %s status to: %s", order_id, new_status.value)

    row = await _load_for_update(session, order_id)
    current = OrderStatus(row.status)
    if current == new_status:
        await session.rollback()
        logger.info("Order %s already %s", order_id, current.value)
        return await queries.get_order(session, order_id)
    check_transition(current, new_status)

    now = _now()
    values = {"status": new_status.value, "updated_at": now}
    if new_status == OrderStatus.DELIVERED:
        values["delivery_time"] = now

    await session.execute(update(orders).where(orders.c.id == order_id).values(**values))
    await session.commit()

    order = await queries.get_order(session, order_id)
    await _publish(bus, order, EventType.ORDER_STATUS_UPDATED)
    if new_status == OrderStatus.CANCELLED:
        await _publish(bus, order, EventType.ORDER_CANCELLED)
    return order


async def cancel_order(session: AsyncSession, bus: EventBus, order_id: int) -> dict:
    return await update_status(session, bus, order_id, OrderStatus.CANCELLED)


async def update_payment_status(
    session: AsyncSession,
    bus: EventBus,
    order_id: int,
    payment_status: PaymentStatus,
) -> dict:
    """
    Record the payment outcome on the order.

    COMPLETED confirms the order and publishes PAYMENT_COMPLETED, which
    triggers delivery assignment. FAILED cancels the order. REFUNDED only
    changes the payment status.
    """
    logger.info("Updating payment status for order %s to: %s", order_id, payment_status.value)

    row = await _load_for_update(session, order_id)
    current = PaymentStatus(row.payment_status)
    if current == payment_status:
        await session.rollback()
        logger.info("Order %s payment already %s", order_id, current.value)
        return await queries.get_order(session, order_id)
    check_payment_transition(current, payment_status)

    values = {"payment_status": payment_status.value, "updated_at": _now()}
    order_status = OrderStatus(row.status)
    target = PAYMENT_OUTCOME.get(payment_status)
    if target is not None:
        if can_transition(order_status, target):
            values["status"] = target.value
            order_status = target
        else:
            logger.warning(
                "Order %s is %s; payment %s leaves the order status unchanged",
                order_id, order_status.value, payment_status.value,
            )

    await session.execute(update(orders).where(orders.c.id == order_id).values(**values))
    await session.commit()

    order = await queries.get_order(session, order_id)
    if payment_status == PaymentStatus.COMPLETED and order_status != OrderStatus.CANCELLED:
        await _publish(bus, order, EventType.PAYMENT_COMPLETED)
    elif values.get("status") == OrderStatus.CANCELLED.value:
        await _publish(bus, order, EventType.ORDER_CANCELLED)
    return order


async def assign_delivery_partner(
    session: AsyncSession,
    bus: EventBus,
    order_id: int,
    delivery_partner_id: int,
) -> dict:
    """Record the assigned partner, move the order to READY, publish DELIVERY_ASSIGNED."""
    logger.info("Assigning delivery partner %s to order %s", delivery_partner_id, order_id)

    row = await _load_for_update(session, order_id)
    current = OrderStatus(row.status)
    if current in (OrderStatus.CANCELLED, OrderStatus.DELIVERED):
        await session.rollback()
        raise InvalidStateError(f"Order {order_id} is {current.value}")

    values = {"delivery_partner_id": delivery_partner_id, "updated_at": _now()}
    if is_before(current, OrderStatus.READY):
        values["status"] = OrderStatus.READY.value
    elif row.delivery_partner_id == delivery_partner_id:
        await session.rollback()
        logger.info("Order %s already assigned to partner %s", order_id, delivery_partner_id)
        return await queries.get_order(session, order_id)

    await session.execute(update(orders).where(orders.c.id == order_id).values(**values))
    await session.commit()

    order = await queries.get_order(session, order_id)
    await _publish(bus, order, EventType.DELIVERY_ASSIGNED)
    return order
