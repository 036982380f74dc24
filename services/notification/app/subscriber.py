"""
Notification Service — Event subscriptions

Listens to every topic. The order service re-publishes PAYMENT_COMPLETED
and DELIVERY_ASSIGNED on order-events for the delivery service; those
mirrors are skipped here so the customer hears about each step once.

A failed notification is logged and dropped: it never reaches the bus
retry loop, and never holds up the order's other events.
"""

import logging

from services.shared.bus import EventBus
from services.shared.events import (
    DELIVERY_EVENTS,
    ORDER_EVENTS,
    PAYMENT_EVENTS,
    EventType,
    OrderEvent,
)

from .notifier import Notifier

logger = logging.getLogger(__name__)

GROUP = "notification-service-group"

NOTIFY_ON = {
    ORDER_EVENTS: {
        EventType.ORDER_CREATED,
        EventType.ORDER_STATUS_UPDATED,
        EventType.ORDER_CANCELLED,
    },
    PAYMENT_EVENTS: {
        EventType.PAYMENT_COMPLETED,
        EventType.PAYMENT_FAILED,
        EventType.REFUND_COMPLETED,
    },
    DELIVERY_EVENTS: {
        EventType.DELIVERY_ASSIGNED,
        EventType.DELIVERY_PICKED_UP,
        EventType.DELIVERY_IN_TRANSIT,
        EventType.DELIVERY_COMPLETED,
        EventType.DELIVERY_FAILED,
    },
}


def make_handler(topic: str, notifier: Notifier):
    wanted = NOTIFY_ON[topic]

    async def handle(event: OrderEvent) -> None:
        logger.info("Received %s on %s for order %s", event.event_type.value, topic, event.order_id)
        if event.event_type == EventType.UNKNOWN:
            logger.warning("Unknown event type on %s for order %s", topic, event.order_id)
            return
        if event.event_type not in wanted:
            logger.debug("No notification for %s on %s", event.event_type.value, topic)
            return
        try:
            notifier.notify(event)
        except Exception:
            logger.exception("Error sending notification for order %s", event.order_id)

    return handle


def register(bus: EventBus, notifier: Notifier) -> None:
    for topic in NOTIFY_ON:
        bus.subscribe(topic, GROUP, make_handler(topic, notifier))
