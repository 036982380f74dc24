"""
Order Service — Event subscriptions

The order service keeps its status in sync with what the other services
report:

  payment-events   PAYMENT_COMPLETED  → payment COMPLETED, order CONFIRMED
                   PAYMENT_FAILED     → payment FAILED, order CANCELLED
                   REFUND_COMPLETED   → payment REFUNDED
  delivery-events  DELIVERY_ASSIGNED  → partner recorded, order READY
                   DELIVERY_PICKED_UP → order PICKED_UP
                   DELIVERY_COMPLETED → order DELIVERED
"""

import logging

from sqlalchemy.orm import sessionmaker

from services.shared.bus import EventBus
from services.shared.errors import ValidationError
from services.shared.events import DELIVERY_EVENTS, PAYMENT_EVENTS, EventType, OrderEvent

from . import commands
from .aggregate import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

GROUP = "order-service-group"

PAYMENT_STATUS_BY_EVENT = {
    EventType.PAYMENT_COMPLETED: PaymentStatus.COMPLETED,
    EventType.PAYMENT_FAILED: PaymentStatus.FAILED,
    EventType.REFUND_COMPLETED: PaymentStatus.REFUNDED,
}

ORDER_STATUS_BY_EVENT = {
    EventType.DELIVERY_PICKED_UP: OrderStatus.PICKED_UP,
    EventType.DELIVERY_COMPLETED: OrderStatus.DELIVERED,
}


def _skip(event: OrderEvent, topic: str) -> None:
    if event.event_type == EventType.UNKNOWN:
        logger.warning("Unknown event type on %s for order %s", topic, event.order_id)
    else:
        logger.debug("Ignoring %s on %s", event.event_type.value, topic)


def register(bus: EventBus, session_factory: sessionmaker) -> None:
    async def on_payment_event(event: OrderEvent) -> None:
        status = PAYMENT_STATUS_BY_EVENT.get(event.event_type)
        if status is None:
            _skip(event, PAYMENT_EVENTS)
            return
        async with session_factory() as session:
            await commands.update_payment_status(session, bus, event.order_id, status)

    async def on_delivery_event(event: OrderEvent) -> None:
        if event.event_type == EventType.DELIVERY_ASSIGNED:
            if event.delivery_partner_id is None:
                raise ValidationError(f"DELIVERY_ASSIGNED for order {event.order_id} without a partner")
            async with session_factory() as session:
                await commands.assign_delivery_partner(
                    session, bus, event.order_id, event.delivery_partner_id
                )
            return

        status = ORDER_STATUS_BY_EVENT.get(event.event_type)
        if status is None:
            _skip(event, DELIVERY_EVENTS)
            return
        async with session_factory() as session:
            await commands.update_status(session, bus, event.order_id, status)

    bus.subscribe(PAYMENT_EVENTS, GROUP, on_payment_event)
    bus.subscribe(DELIVERY_EVENTS, GROUP, on_delivery_event)
