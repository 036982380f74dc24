"""
Payment Service — Command handlers (write side)

  order-events: ORDER_CREATED ──▶ process_payment ──▶ payment-events:
                                                        PAYMENT_COMPLETED | PAYMENT_FAILED
  delivery-events: DELIVERY_FAILED ──▶ process_refund ──▶ payment-events: REFUND_COMPLETED

The unique index on payments.order_id makes charging idempotent: a
redelivered ORDER_CREATED finds the existing record and returns it, and a
concurrent duplicate that loses the insert race does the same. A record
still PROCESSING belongs to an attempt that never finished, so redelivery
charges it again and finalises it.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.bus import EventBus
from services.shared.errors import (
    InvalidStateError,
    NotFoundError,
    TransientProcessingError,
    ValidationError,
)
from services.shared.events import PAYMENT_EVENTS, EventType, OrderEvent

from . import queries
from .gateway import SimulatedGateway
from .schema import PaymentMethod, PaymentStatus, payments

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _event(payment: dict, event_type: EventType, source: OrderEvent | None = None) -> OrderEvent:
    if source is not None:
        return source.follow_up(event_type, payment_status=payment["status"])
    return OrderEvent(
        event_type=event_type,
        order_id=payment["order_id"],
        user_id=payment["user_id"],
        amount=payment["amount"],
        payment_status=payment["status"],
    )


async def _publish(bus: EventBus, event: OrderEvent) -> None:
    await bus.publish(PAYMENT_EVENTS, event.key, event)
    logger.info("Published %s for order %s", event.event_type.value, event.order_id)


async def process_payment(
    session: AsyncSession,
    bus: EventBus,
    gateway: SimulatedGateway,
    event: OrderEvent,
    method: PaymentMethod = PaymentMethod.CREDIT_CARD,
) -> dict:
    """
    Charge the order carried by an ORDER_CREATED envelope.

    1. Return the existing payment if it already has an outcome
    2. Store a PROCESSING record (the unique order_id settles races), or
       resume one left behind by an interrupted attempt
    3. Call the gateway
    4. Store SUCCESS or FAILED and publish the outcome
    """
    order_id = event.order_id
    logger.info("Processing payment for order ID: %s", order_id)

    existing = await queries.get_payment_by_order(session, order_id)
    if existing and existing["status"] != PaymentStatus.PROCESSING.value:
        logger.info("Payment already exists for order ID: %s", order_id)
        return existing

    if existing:
        logger.warning("Resuming interrupted payment for order ID: %s", order_id)
        return await _complete_charge(session, bus, gateway, existing, event)

    if event.user_id is None or event.amount is None:
        raise ValidationError(f"ORDER_CREATED for order {order_id} lacks user or amount")

    try:
        await session.execute(
            insert(payments).values(
                order_id=order_id,
                user_id=event.user_id,
                amount=event.amount,
                payment_method=method.value,
                status=PaymentStatus.PROCESSING.value,
                created_at=_now(),
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("Concurrent payment for order %s won the race", order_id)
        existing = await queries.get_payment_by_order(session, order_id)
        if existing is None:
            raise TransientProcessingError(f"Payment insert for order {order_id} conflicted")
        return existing

    payment = await queries.get_payment_by_order(session, order_id)
    return await _complete_charge(session, bus, gateway, payment, event)


async def _complete_charge(
    session: AsyncSession,
    bus: EventBus,
    gateway: SimulatedGateway,
    payment: dict,
    event: OrderEvent,
) -> dict:
    order_id = payment["order_id"]
    charge = await gateway.charge(order_id, payment["amount"], payment["payment_method"])

    values = {"gateway_response": charge.gateway_response, "completed_at": _now()}
    if charge.success:
        values["status"] = PaymentStatus.SUCCESS.value
        values["transaction_id"] = charge.transaction_id
    else:
        values["status"] = PaymentStatus.FAILED.value

    # Only the attempt that moves the row out of PROCESSING publishes.
    result = await session.execute(
        update(payments)
        .where(
            payments.c.id == payment["id"],
            payments.c.status == PaymentStatus.PROCESSING.value,
        )
        .values(**values)
    )
    await session.commit()

    payment = await queries.get_payment_by_order(session, order_id)
    if result.rowcount != 1:
        logger.info("Payment for order %s was completed by another attempt", order_id)
        return payment

    if charge.success:
        logger.info("Payment successful for order ID: %s", order_id)
    else:
        logger.warning("Payment failed for order ID: %s (%s)", order_id, charge.gateway_response)

    event_type = EventType.PAYMENT_COMPLETED if charge.success else EventType.PAYMENT_FAILED
    await _publish(bus, _event(payment, event_type, source=event))
    return payment


async def process_refund(session: AsyncSession, bus: EventBus, order_id: int) -> dict:
    """Refund a successful payment and publish REFUND_COMPLETED."""
    logger.info("Processing refund for order ID: %s", order_id)

    result = await session.execute(
        select(payments).where(payments.c.order_id == order_id).with_for_update()
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError(f"Payment not found for order ID: {order_id}")

    status = PaymentStatus(row.status)
    if status == PaymentStatus.REFUNDED:
        await session.rollback()
        logger.info("Payment for order %s already refunded", order_id)
        return await queries.get_payment_by_order(session, order_id)
    if status != PaymentStatus.SUCCESS:
        await session.rollback()
        raise InvalidStateError(f"Cannot refund payment in {status.value} status")

    await session.execute(
        update(payments)
        .where(payments.c.id == row.id)
        .values(status=PaymentStatus.REFUNDED.value, gateway_response="Refund processed")
    )
    await session.commit()
    logger.info("Refund processed for order ID: %s", order_id)

    payment = await queries.get_payment_by_order(session, order_id)
    await _publish(bus, _event(payment, EventType.REFUND_COMPLETED))
    return payment
