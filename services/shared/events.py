"""
Shared — Event envelope

The one message shape carried on every topic. Events are named in the past
tense and treated as immutable: a consumer never edits a received envelope,
it builds a new one (`follow_up`) before publishing.
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

ORDER_EVENTS = "order-events"
PAYMENT_EVENTS = "payment-events"
DELIVERY_EVENTS = "delivery-events"

ALL_TOPICS = (ORDER_EVENTS, PAYMENT_EVENTS, DELIVERY_EVENTS)


class EventType(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_STATUS_UPDATED = "ORDER_STATUS_UPDATED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    DELIVERY_ASSIGNED = "DELIVERY_ASSIGNED"
    DELIVERY_PICKED_UP = "DELIVERY_PICKED_UP"
    DELIVERY_IN_TRANSIT = "DELIVERY_IN_TRANSIT"
    DELIVERY_COMPLETED = "DELIVERY_COMPLETED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    DELIVERY_CANCELLED = "DELIVERY_CANCELLED"
    REFUND_COMPLETED = "REFUND_COMPLETED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def _missing_(cls, value):
        # Producers may be newer than this consumer.
        return cls.UNKNOWN


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderEvent(BaseModel):
    """Envelope published to order-events, payment-events and delivery-events."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    order_id: int
    user_id: int | None = None
    restaurant_id: int | None = None
    delivery_partner_id: int | None = None
    amount: float | None = None
    order_status: str | None = None
    payment_status: str | None = None
    timestamp: datetime = Field(default_factory=_now)

    @property
    def key(self) -> str:
        """Partition key: per-order ordering is all the bus guarantees."""
        return str(self.order_id)

    def follow_up(self, event_type: EventType, **changes) -> "OrderEvent":
        """Build a new envelope for the same order, with a fresh id and timestamp."""
        data = self.model_dump(exclude={"event_id", "timestamp", "event_type"})
        data.update(changes)
        return OrderEvent(event_type=event_type, **data)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "OrderEvent":
        return cls.model_validate_json(raw)
