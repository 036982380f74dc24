"""Tests for the event envelope and the in-process bus."""

import asyncio

import pydantic
import pytest

from services.shared.bus import InMemoryEventBus, NullEventBus, partition_for
from services.shared.errors import NotFoundError
from services.shared.events import ORDER_EVENTS, PAYMENT_EVENTS, EventType, OrderEvent


def _event(order_id: int, event_type: EventType = EventType.ORDER_CREATED) -> OrderEvent:
    return OrderEvent(event_type=event_type, order_id=order_id, user_id=1, restaurant_id=2, amount=75.0)


class TestOrderEvent:
    def test_json_round_trip_keeps_fields(self):
        event = _event(7)
        decoded = OrderEvent.from_json(event.to_json())
        assert decoded == event
        assert decoded.key == "7"

    def test_unknown_event_type_decodes_to_unknown(self):
        raw = _event(7).to_json().replace("ORDER_CREATED", "ORDER_RATED")
        assert OrderEvent.from_json(raw).event_type == EventType.UNKNOWN

    def test_envelope_is_immutable(self):
        event = _event(7)
        with pytest.raises(pydantic.ValidationError):
            event.amount = 1.0

    def test_follow_up_builds_new_envelope(self):
        event = _event(7)
        follow = event.follow_up(EventType.PAYMENT_COMPLETED, payment_status="SUCCESS")
        assert follow.event_type == EventType.PAYMENT_COMPLETED
        assert follow.payment_status == "SUCCESS"
        assert follow.order_id == 7
        assert follow.amount == 75.0
        assert follow.event_id != event.event_id
        assert event.payment_status is None


class TestPartitioning:
    def test_partition_is_stable(self):
        assert partition_for("42", 3) == partition_for("42", 3)
        assert 0 <= partition_for("42", 3) < 3

    def test_single_partition(self):
        assert {partition_for(str(i), 1) for i in range(20)} == {0}


class TestNullEventBus:
    async def test_records_without_delivering(self):
        bus = NullEventBus()
        handled = []

        async def handler(event):
            handled.append(event)

        bus.subscribe(ORDER_EVENTS, "g", handler)
        await bus.publish(ORDER_EVENTS, "1", _event(1))
        await bus.publish(PAYMENT_EVENTS, "1", _event(1, EventType.PAYMENT_COMPLETED))

        assert handled == []
        assert bus.event_types() == ["ORDER_CREATED", "PAYMENT_COMPLETED"]
        assert bus.event_types(PAYMENT_EVENTS) == ["PAYMENT_COMPLETED"]


class TestInMemoryEventBus:
    async def test_every_group_sees_every_message(self):
        bus = InMemoryEventBus()
        seen = {"a": [], "b": []}

        def make(name):
            async def handler(event):
                seen[name].append(event.order_id)
            return handler

        bus.subscribe(ORDER_EVENTS, "a", make("a"))
        bus.subscribe(ORDER_EVENTS, "b", make("b"))
        await bus.start()
        for order_id in (1, 2, 3):
            await bus.publish(ORDER_EVENTS, str(order_id), _event(order_id))
        await bus.drain()
        await bus.stop()

        assert sorted(seen["a"]) == [1, 2, 3]
        assert sorted(seen["b"]) == [1, 2, 3]

    async def test_duplicate_group_rejected(self):
        bus = InMemoryEventBus()

        async def handler(event):
            pass

        bus.subscribe(ORDER_EVENTS, "g", handler)
        with pytest.raises(ValueError):
            bus.subscribe(ORDER_EVENTS, "g", handler)

    async def test_same_key_handled_in_order_and_never_concurrently(self):
        bus = InMemoryEventBus(concurrency=3)
        active: dict[str, int] = {}
        overlaps = []
        order = []

        async def handler(event):
            key = event.key
            active[key] = active.get(key, 0) + 1
            if active[key] > 1:
                overlaps.append(key)
            await asyncio.sleep(0.001)
            order.append((key, event.event_type))
            active[key] -= 1

        bus.subscribe(ORDER_EVENTS, "g", handler)
        await bus.start()
        sequence = [EventType.ORDER_CREATED, EventType.ORDER_STATUS_UPDATED, EventType.ORDER_CANCELLED]
        for event_type in sequence:
            for order_id in (1, 2, 3, 4):
                await bus.publish(ORDER_EVENTS, str(order_id), _event(order_id, event_type))
        await bus.drain()
        await bus.stop()

        assert overlaps == []
        for order_id in ("1", "2", "3", "4"):
            assert [t for k, t in order if k == order_id] == sequence

    async def test_transient_failure_is_retried(self):
        bus = InMemoryEventBus(max_retries=3)
        attempts = []

        async def flaky(event):
            attempts.append(event.order_id)
            if len(attempts) < 3:
                raise RuntimeError("database is locked")

        bus.subscribe(ORDER_EVENTS, "g", flaky)
        await bus.start()
        await bus.publish(ORDER_EVENTS, "9", _event(9))
        await bus.drain()
        await bus.stop()

        assert attempts == [9, 9, 9]
        assert bus.dead_letters == []

    async def test_persistent_failure_is_dead_lettered(self):
        bus = InMemoryEventBus(max_retries=2)
        attempts = []

        async def broken(event):
            attempts.append(event.order_id)
            raise RuntimeError("boom")

        bus.subscribe(ORDER_EVENTS, "g", broken)
        await bus.start()
        await bus.publish(ORDER_EVENTS, "9", _event(9))
        await bus.drain()
        await bus.stop()

        assert len(attempts) == 3
        [letter] = bus.dead_letters
        assert letter.topic == ORDER_EVENTS
        assert letter.group == "g"
        assert letter.key == "9"
        assert letter.attempts == 3
        assert "RuntimeError: boom" in letter.error
        assert OrderEvent.from_json(letter.payload).order_id == 9

    async def test_domain_error_is_dead_lettered_without_retry(self):
        bus = InMemoryEventBus(max_retries=3)
        attempts = []

        async def rejecting(event):
            attempts.append(event.order_id)
            raise NotFoundError("Order not found with ID: 9")

        bus.subscribe(ORDER_EVENTS, "g", rejecting)
        await bus.start()
        await bus.publish(ORDER_EVENTS, "9", _event(9))
        await bus.drain()
        await bus.stop()

        assert attempts == [9]
        assert bus.dead_letters[0].attempts == 1

    async def test_failed_message_does_not_block_the_next_one(self):
        bus = InMemoryEventBus(concurrency=1, max_retries=0)
        handled = []

        async def handler(event):
            if event.event_type == EventType.ORDER_CREATED:
                raise RuntimeError("boom")
            handled.append(event.event_type)

        bus.subscribe(ORDER_EVENTS, "g", handler)
        await bus.start()
        await bus.publish(ORDER_EVENTS, "1", _event(1))
        await bus.publish(ORDER_EVENTS, "1", _event(1, EventType.ORDER_CANCELLED))
        await bus.drain()
        await bus.stop()

        assert handled == [EventType.ORDER_CANCELLED]
        assert len(bus.dead_letters) == 1

    async def test_handlers_receive_decoded_copies(self):
        bus = InMemoryEventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(ORDER_EVENTS, "g", handler)
        await bus.start()
        original = _event(5)
        await bus.publish(ORDER_EVENTS, "5", original)
        await bus.drain()
        await bus.stop()

        assert received == [original]
        assert received[0] is not original
