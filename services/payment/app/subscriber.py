"""
Payment Service — Event subscriptions

  order-events     ORDER_CREATED    → charge the order
  delivery-events  DELIVERY_FAILED  → refund the order
"""

import logging

from sqlalchemy.orm import sessionmaker

from services.shared.bus import EventBus
from services.shared.events import DELIVERY_EVENTS, ORDER_EVENTS, EventType, OrderEvent

from . import commands
from .gateway import SimulatedGateway

logger = logging.getLogger(__name__)

GROUP = "payment-service-group"


def register(bus: EventBus, session_factory: sessionmaker, gateway: SimulatedGateway) -> None:
    async def on_order_event(event: OrderEvent) -> None:
        if event.event_type == EventType.ORDER_CREATED:
            async with session_factory() as session:
                await commands.process_payment(session, bus, gateway, event)
        elif event.event_type == EventType.UNKNOWN:
            logger.warning("Unknown event type on %s for order %s", ORDER_EVENTS, event.order_id)

    async def on_delivery_event(event: OrderEvent) -> None:
        if event.event_type == EventType.DELIVERY_FAILED:
            logger.info("Delivery failed for order %s, refunding", event.order_id)
            async with session_factory() as session:
                await commands.process_refund(session, bus, event.order_id)
        elif event.event_type == EventType.UNKNOWN:
            logger.warning("Unknown event type on %s for order %s", DELIVERY_EVENTS, event.order_id)

    bus.subscribe(ORDER_EVENTS, GROUP, on_order_event)
    bus.subscribe(DELIVERY_EVENTS, GROUP, on_delivery_event)
