"""
Notification Service — Templates and channels

Email, SMS and push delivery are simulated by logging. Each sent
notification is also kept in a short in-memory history, exposed on
/notifications/recent for debugging.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from services.shared.events import EventType, OrderEvent

logger = logging.getLogger(__name__)

CHANNELS = ("email", "push", "sms")


@dataclass(frozen=True)
class Notification:
    order_id: int
    user_id: int | None
    event_type: str
    subject: str
    message: str
    channels: tuple[str, ...] = CHANNELS
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _amount(event: OrderEvent) -> str:
    return f"${event.amount:.2f}" if event.amount is not None else "the order total"


TEMPLATES = {
    EventType.ORDER_CREATED: (
        "Order Placed",
        lambda e: (
            f"Your order #{e.order_id} has been placed successfully!\n"
            f"Total Amount: {_amount(e)}\n"
            "We'll notify you once payment is confirmed."
        ),
    ),
    EventType.ORDER_STATUS_UPDATED: (
        "Order Updated",
        lambda e: f"Your order #{e.order_id} status has been updated to: {e.order_status}",
    ),
    EventType.ORDER_CANCELLED: (
        "Order Cancelled",
        lambda e: (
            f"Your order #{e.order_id} has been cancelled.\n"
            "If you were already charged, please contact support about your payment."
        ),
    ),
    EventType.PAYMENT_COMPLETED: (
        "Payment Successful",
        lambda e: (
            f"Payment of {_amount(e)} for order #{e.order_id} has been processed successfully!\n"
            "Your order is being prepared."
        ),
    ),
    EventType.PAYMENT_FAILED: (
        "Payment Failed",
        lambda e: (
            f"Payment for order #{e.order_id} failed.\n"
            "Please try again with a different payment method."
        ),
    ),
    EventType.REFUND_COMPLETED: (
        "Refund Processed",
        lambda e: f"A refund of {_amount(e)} for order #{e.order_id} has been processed.",
    ),
    EventType.DELIVERY_ASSIGNED: (
        "Delivery Partner Assigned",
        lambda e: (
            f"Great news! A delivery partner has been assigned to your order #{e.order_id}.\n"
            "Your order will be delivered soon!"
        ),
    ),
    EventType.DELIVERY_PICKED_UP: (
        "Order Picked Up",
        lambda e: f"Your order #{e.order_id} has been picked up by the delivery partner.",
    ),
    EventType.DELIVERY_IN_TRANSIT: (
        "Order On The Way",
        lambda e: f"Your order #{e.order_id} is on its way to you.",
    ),
    EventType.DELIVERY_COMPLETED: (
        "Order Delivered",
        lambda e: (
            f"Your order #{e.order_id} has been delivered successfully!\n"
            "Enjoy your meal! Please rate your experience."
        ),
    ),
    EventType.DELIVERY_FAILED: (
        "Delivery Issue",
        lambda e: (
            f"We're sorry! Delivery of order #{e.order_id} failed.\n"
            "Your payment will be refunded."
        ),
    ),
}


class Notifier:
    def __init__(self, history_size: int = 100):
        self.history: deque[Notification] = deque(maxlen=history_size)

    def render(self, event: OrderEvent) -> Notification | None:
        template = TEMPLATES.get(event.event_type)
        if template is None:
            return None
        subject, body = template
        return Notification(
            order_id=event.order_id,
            user_id=event.user_id,
            event_type=event.event_type.value,
            subject=subject,
            message=body(event),
        )

    def notify(self, event: OrderEvent) -> Notification | None:
        notification = self.render(event)
        if notification is None:
            logger.info("No notification template for %s", event.event_type.value)
            return None
        self.send(notification)
        return notification

    def send(self, notification: Notification) -> None:
        logger.info(
            "EMAIL to user %s | %s | %s",
            notification.user_id, notification.subject, notification.message.replace("\n", " "),
        )
        logger.info("PUSH notification sent to user %s: %s", notification.user_id, notification.subject)
        logger.info("SMS notification sent to user %s: %s", notification.user_id, notification.subject)
        self.history.append(notification)

    def recent(self, limit: int = 20) -> list[Notification]:
        return list(self.history)[-limit:]
