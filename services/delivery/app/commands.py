"""
Delivery Service — Command handlers (write side)

  order-events: PAYMENT_COMPLETED ──▶ assign_delivery_partner ──▶ delivery-events: DELIVERY_ASSIGNED
  order-events: ORDER_CANCELLED   ──▶ cancel_delivery         ──▶ delivery-events: DELIVERY_CANCELLED
  PUT /deliveries/{id}/status     ──▶ update_delivery_status  ──▶ delivery-events: DELIVERY_<status>
  POST /deliveries/{order}/reassign ─▶ reassign_delivery_partner ─▶ delivery-events: DELIVERY_ASSIGNED

Delivery status flow:
    ASSIGNED → PICKED_UP → IN_TRANSIT → DELIVERED
        └──────────┴────────────┴─────→ FAILED | CANCELLED

A partner is BUSY exactly while one non-terminal delivery points at it.
Reservation and the delivery write share one transaction, so a failed
insert rolls the reservation back with it.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.bus import EventBus
from services.shared.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    TransientProcessingError,
)
from services.shared.events import DELIVERY_EVENTS, EventType, OrderEvent

from . import queries
from .allocation import release_partner, reserve_partner
from .schema import (
    TERMINAL,
    DeliveryStatus,
    PartnerStatus,
    VehicleType,
    deliveries,
    delivery_partners,
)

logger = logging.getLogger(__name__)

DEFAULT_ETA_MINUTES = 30

_FLOW = [
    DeliveryStatus.ASSIGNED,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.DELIVERED,
]

EVENT_BY_STATUS = {
    DeliveryStatus.ASSIGNED: EventType.DELIVERY_ASSIGNED,
    DeliveryStatus.PICKED_UP: EventType.DELIVERY_PICKED_UP,
    DeliveryStatus.IN_TRANSIT: EventType.DELIVERY_IN_TRANSIT,
    DeliveryStatus.DELIVERED: EventType.DELIVERY_COMPLETED,
    DeliveryStatus.FAILED: EventType.DELIVERY_FAILED,
    DeliveryStatus.CANCELLED: EventType.DELIVERY_CANCELLED,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _event(delivery: dict, event_type: EventType) -> OrderEvent:
    return OrderEvent(
        event_type=event_type,
        order_id=delivery["order_id"],
        user_id=delivery["user_id"],
        restaurant_id=delivery["restaurant_id"],
        delivery_partner_id=delivery["delivery_partner_id"],
    )


async def _publish(bus: EventBus, delivery: dict, event_type: EventType) -> None:
    await bus.publish(DELIVERY_EVENTS, str(delivery["order_id"]), _event(delivery, event_type))
    logger.info("Published %s for order %s", event_type.value, delivery["order_id"])


def _check_delivery_transition(current: DeliveryStatus, target: DeliveryStatus) -> None:
    if current in TERMINAL:
        raise InvalidStateError(f"Delivery is already {current.value}")
    if target in (DeliveryStatus.FAILED, DeliveryStatus.CANCELLED):
        return
    if _FLOW.index(target) < _FLOW.index(current):
        raise InvalidStateError(
            f"Cannot move delivery from {current.value} to {target.value}"
        )


async def assign_delivery_partner(
    session: AsyncSession,
    bus: EventBus,
    event: OrderEvent,
    eta_minutes: int = DEFAULT_ETA_MINUTES,
) -> dict:
    """
    Assign a partner to a paid order.

    1. Return the existing delivery if there is one
    2. Reserve the first AVAILABLE partner (ResourceExhaustedError if none)
    3. Store the delivery as ASSIGNED with an ETA
    4. Publish DELIVERY_ASSIGNED
    """
    order_id = event.order_id
    logger.info("Assigning delivery partner for order ID: %s", order_id)

    existing = await queries.get_delivery_by_order(session, order_id)
    if existing:
        logger.info("Delivery already exists for order ID: %s", order_id)
        return existing

    try:
        partner_id = await reserve_partner(session)
    except Exception:
        await session.rollback()
        raise

    now = _now()
    try:
        await session.execute(
            insert(deliveries).values(
                order_id=order_id,
                delivery_partner_id=partner_id,
                restaurant_id=event.restaurant_id,
                user_id=event.user_id,
                status=DeliveryStatus.ASSIGNED.value,
                assigned_at=now,
                estimated_delivery_time=now + timedelta(minutes=eta_minutes),
            )
        )
        await session.commit()
    except IntegrityError:
        # Rolling back also returns the reserved partner.
        await session.rollback()
        logger.info("Concurrent assignment for order %s won the race", order_id)
        existing = await queries.get_delivery_by_order(session, order_id)
        if existing is None:
            raise TransientProcessingError(f"Delivery insert for order {order_id} conflicted")
        return existing

    logger.info("Delivery partner %s assigned to order %s", partner_id, order_id)
    delivery = await queries.get_delivery_by_order(session, order_id)
    await _publish(bus, delivery, EventType.DELIVERY_ASSIGNED)
    return delivery


async def update_delivery_status(
    session: AsyncSession,
    bus: EventBus,
    delivery_id: int,
    new_status: DeliveryStatus,
) -> dict:
    logger.info("Updating delivery %s status to: %s", delivery_id, new_status.value)

    result = await session.execute(
        select(deliveries).where(deliveries.c.id == delivery_id).with_for_update()
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError(f"Delivery not found with ID: {delivery_id}")

    current = DeliveryStatus(row.status)
    if current == new_status:
        await session.rollback()
        logger.info("Delivery %s already %s", delivery_id, current.value)
        return await queries.get_delivery(session, delivery_id)
    try:
        _check_delivery_transition(current, new_status)
    except InvalidStateError:
        await session.rollback()
        raise

    now = _now()
    values = {"status": new_status.value}
    if new_status == DeliveryStatus.PICKED_UP:
        values["picked_up_at"] = now
    elif new_status == DeliveryStatus.DELIVERED:
        values["delivered_at"] = now
        await session.execute(
            update(delivery_partners)
            .where(delivery_partners.c.id == row.delivery_partner_id)
            .values(total_deliveries=delivery_partners.c.total_deliveries + 1)
        )
    if new_status in TERMINAL:
        await release_partner(session, row.delivery_partner_id)

    await session.execute(update(deliveries).where(deliveries.c.id == delivery_id).values(**values))
    await session.commit()

    delivery = await queries.get_delivery(session, delivery_id)
    await _publish(bus, delivery, EVENT_BY_STATUS[new_status])
    return delivery


async def reassign_delivery_partner(session: AsyncSession, bus: EventBus, order_id: int) -> dict:
    """
    Hand an active delivery to another partner.

    The new partner is reserved before the old one is released, so when
    nobody else is free the ResourceExhaustedError leaves the current
    assignment untouched.
    """
    logger.info("Reassigning delivery partner for order ID: %s", order_id)

    result = await session.execute(
        select(deliveries).where(deliveries.c.order_id == order_id).with_for_update()
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError(f"Delivery not found for order ID: {order_id}")
    current = DeliveryStatus(row.status)
    if current in TERMINAL:
        await session.rollback()
        raise InvalidStateError(f"Cannot reassign a delivery that is {current.value}")

    try:
        partner_id = await reserve_partner(session, exclude_id=row.delivery_partner_id)
    except Exception:
        await session.rollback()
        raise
    await release_partner(session, row.delivery_partner_id)

    await session.execute(
        update(deliveries)
        .where(deliveries.c.id == row.id)
        .values(delivery_partner_id=partner_id, assigned_at=_now())
    )
    await session.commit()
    logger.info(
        "Order %s reassigned from partner %s to %s", order_id, row.delivery_partner_id, partner_id
    )

    delivery = await queries.get_delivery_by_order(session, order_id)
    await _publish(bus, delivery, EventType.DELIVERY_ASSIGNED)
    return delivery


async def cancel_delivery(session: AsyncSession, bus: EventBus, order_id: int) -> dict | None:
    """Cancel the order's delivery, if any, and free its partner."""
    delivery = await queries.get_delivery_by_order(session, order_id)
    if delivery is None:
        logger.info("No delivery to cancel for order ID: %s", order_id)
        return None
    if DeliveryStatus(delivery["status"]) in TERMINAL:
        logger.info("Delivery for order %s is already %s", order_id, delivery["status"])
        return delivery
    return await update_delivery_status(session, bus, delivery["id"], DeliveryStatus.CANCELLED)


# ── Partner management ───────────────────────────

async def register_partner(
    session: AsyncSession,
    *,
    name: str,
    phone: str,
    vehicle_type: VehicleType,
    vehicle_number: str | None = None,
    rating: float = 5.0,
) -> dict:
    try:
        result = await session.execute(
            insert(delivery_partners).values(
                name=name,
                phone=phone,
                vehicle_type=vehicle_type.value,
                vehicle_number=vehicle_number,
                status=PartnerStatus.AVAILABLE.value,
                rating=rating,
                total_deliveries=0,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictError(f"Delivery partner with phone {phone} already exists")
    partner_id = result.inserted_primary_key[0]
    logger.info("Registered delivery partner %s (%s)", partner_id, name)
    return await queries.get_partner(session, partner_id)


async def set_partner_status(session: AsyncSession, partner_id: int, status: PartnerStatus) -> dict:
    """Put a partner on or off shift. Only the allocator sets BUSY."""
    if status == PartnerStatus.BUSY:
        raise InvalidStateError("Partners become BUSY only through assignment")

    result = await session.execute(
        select(delivery_partners).where(delivery_partners.c.id == partner_id).with_for_update()
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError(f"Delivery partner not found with ID: {partner_id}")
    if row.status == PartnerStatus.BUSY.value:
        await session.rollback()
        raise InvalidStateError(f"Delivery partner {partner_id} is on a delivery")

    await session.execute(
        update(delivery_partners)
        .where(delivery_partners.c.id == partner_id)
        .values(status=status.value)
    )
    await session.commit()
    return await queries.get_partner(session, partner_id)


async def mark_partner_available(session: AsyncSession, partner_id: int) -> dict:
    """
    Put a partner back into the pool, including one left BUSY by a
    reservation that never produced a delivery. A partner still carrying
    an open delivery stays BUSY until that delivery ends.
    """
    result = await session.execute(
        select(delivery_partners).where(delivery_partners.c.id == partner_id).with_for_update()
    )
    if not result.fetchone():
        raise NotFoundError(f"Delivery partner not found with ID: {partner_id}")

    result = await session.execute(
        select(deliveries.c.id).where(
            deliveries.c.delivery_partner_id == partner_id,
            deliveries.c.status.not_in([s.value for s in TERMINAL]),
        )
    )
    open_delivery = result.scalar()
    if open_delivery is not None:
        await session.rollback()
        raise InvalidStateError(
            f"Delivery partner {partner_id} is on delivery {open_delivery}"
        )

    await session.execute(
        update(delivery_partners)
        .where(delivery_partners.c.id == partner_id)
        .values(status=PartnerStatus.AVAILABLE.value)
    )
    await session.commit()
    logger.info("Delivery partner %s marked available", partner_id)
    return await queries.get_partner(session, partner_id)
