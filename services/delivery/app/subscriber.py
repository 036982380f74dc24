"""
Delivery Service — Event subscriptions

  order-events  PAYMENT_COMPLETED → assign a partner
                ORDER_CANCELLED   → cancel the delivery, free the partner

No available partner is a business rejection (ResourceExhaustedError): the
message is dead-lettered, not retried, and the order stays CONFIRMED until
an operator reassigns.
"""

import logging

from sqlalchemy.orm import sessionmaker

from services.shared.bus import EventBus
from services.shared.events import ORDER_EVENTS, EventType, OrderEvent

from . import commands

logger = logging.getLogger(__name__)

GROUP = "delivery-service-group"


def register(
    bus: EventBus,
    session_factory: sessionmaker,
    eta_minutes: int = commands.DEFAULT_ETA_MINUTES,
) -> None:
    async def on_order_event(event: OrderEvent) -> None:
        if event.event_type == EventType.PAYMENT_COMPLETED:
            async with session_factory() as session:
                await commands.assign_delivery_partner(session, bus, event, eta_minutes)
        elif event.event_type == EventType.ORDER_CANCELLED:
            async with session_factory() as session:
                await commands.cancel_delivery(session, bus, event.order_id)
        elif event.event_type == EventType.UNKNOWN:
            logger.warning("Unknown event type on %s for order %s", ORDER_EVENTS, event.order_id)
        else:
            logger.debug("Ignoring %s", event.event_type.value)

    bus.subscribe(ORDER_EVENTS, GROUP, on_order_event)
