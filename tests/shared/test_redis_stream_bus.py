"""RedisStreamBus against a recording stand-in for the redis client."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from services.shared.bus import RedisStreamBus
from services.shared.events import ORDER_EVENTS, EventType, OrderEvent


class RecordingRedis:
    def __init__(self, fail_xadd: bool = False):
        self.fail_xadd = fail_xadd
        self.added: list[tuple[str, dict]] = []
        self.acked: list[tuple[str, str, str]] = []
        self.groups: list[tuple[str, str]] = []

    async def xadd(self, stream, fields, maxlen=None, approximate=True):
        if self.fail_xadd:
            raise RedisConnectionError("connection refused")
        self.added.append((stream, fields))
        return f"{len(self.added)}-0"

    async def xack(self, stream, group, message_id):
        self.acked.append((stream, group, message_id))
        return 1

    async def xgroup_create(self, stream, group, id="0", mkstream=False):
        if (stream, group) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.groups.append((stream, group))
        return True


def _event(order_id: int = 3) -> OrderEvent:
    return OrderEvent(event_type=EventType.ORDER_CREATED, order_id=order_id, user_id=1, amount=10.0)


class TestPublish:
    async def test_publish_appends_key_and_payload(self):
        redis = RecordingRedis()
        bus = RedisStreamBus(redis, "test-consumer")
        event = _event()

        await bus.publish(ORDER_EVENTS, event.key, event)

        [(stream, fields)] = redis.added
        assert stream == ORDER_EVENTS
        assert fields["key"] == "3"
        assert OrderEvent.from_json(fields["event"]) == event

    async def test_publish_failure_is_swallowed(self):
        bus = RedisStreamBus(RecordingRedis(fail_xadd=True), "test-consumer")
        await bus.publish(ORDER_EVENTS, "3", _event())


class TestConsumerGroups:
    async def test_existing_group_is_reused(self):
        redis = RecordingRedis()
        bus = RedisStreamBus(redis, "test-consumer")
        await bus._ensure_group(ORDER_EVENTS, "g")
        await bus._ensure_group(ORDER_EVENTS, "g")
        assert redis.groups == [(ORDER_EVENTS, "g")]

    async def test_undecodable_entry_goes_to_dead_letter_stream(self):
        redis = RecordingRedis()
        bus = RedisStreamBus(redis, "test-consumer")

        async def handler(event):
            pytest.fail("handler must not see undecodable messages")

        bus.subscribe(ORDER_EVENTS, "g", handler)
        group = bus._groups[0]

        await bus._dispatch(group, "1-0", {"key": "3", "event": "{not json"})

        [(stream, fields)] = redis.added
        assert stream == f"{ORDER_EVENTS}.dlq"
        assert fields["group"] == "g"
        assert fields["event"] == "{not json"
        assert redis.acked == [(ORDER_EVENTS, "g", "1-0")]
        assert group.pending == 0

    async def test_handled_message_is_acknowledged(self):
        redis = RecordingRedis()
        bus = RedisStreamBus(redis, "test-consumer", concurrency=2)
        handled = []

        async def handler(event):
            handled.append(event.order_id)

        bus.subscribe(ORDER_EVENTS, "g", handler)
        group = bus._groups[0]
        group.start()
        try:
            await bus._dispatch(group, "5-0", {"key": "3", "event": _event().to_json()})
            for queue in group._queues:
                await queue.join()
        finally:
            await group.stop()

        assert handled == [3]
        assert redis.acked == [(ORDER_EVENTS, "g", "5-0")]


class ScriptedRedis(RecordingRedis):
    """Answers XREADGROUP from a script; the first XACK drops the connection."""

    def __init__(self, bus_ref: list, script: list):
        super().__init__()
        self.bus_ref = bus_ref
        self.script = script
        self.reads: list[str] = []
        self.failed_ack = False

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        self.reads.append(streams[ORDER_EVENTS])
        if not self.script:
            self.bus_ref[0]._shutdown.set()
            return []
        return self.script.pop(0)

    async def xack(self, stream, group, message_id):
        if not self.failed_ack:
            self.failed_ack = True
            raise RedisConnectionError("connection reset")
        return await super().xack(stream, group, message_id)


class TestReadLoop:
    async def test_keeps_reading_after_dispatch_failure(self):
        bus_ref = []
        redis = ScriptedRedis(
            bus_ref,
            [
                [[ORDER_EVENTS, [("1-0", {"key": "3", "event": "{not json"})]]],
                [],
                [[ORDER_EVENTS, [("2-0", {"key": "4", "event": "{not json"})]]],
            ],
        )
        bus = RedisStreamBus(redis, "test-consumer")
        bus_ref.append(bus)

        async def handler(event):
            pytest.fail("handler must not see undecodable messages")

        bus.subscribe(ORDER_EVENTS, "g", handler)
        await asyncio.wait_for(bus._read_loop(bus._groups[0]), 5)

        assert redis.reads == ["0", "1-0", ">", ">"]
        assert redis.acked == [(ORDER_EVENTS, "g", "2-0")]

    async def test_trimmed_entry_is_dead_lettered_and_acknowledged(self):
        redis = RecordingRedis()
        bus = RedisStreamBus(redis, "test-consumer")

        async def handler(event):
            pytest.fail("handler must not see trimmed messages")

        bus.subscribe(ORDER_EVENTS, "g", handler)
        group = bus._groups[0]

        await bus._dispatch(group, "7-0", None)

        [(stream, fields)] = redis.added
        assert stream == f"{ORDER_EVENTS}.dlq"
        assert fields["error"].startswith("MissingBody")
        assert redis.acked == [(ORDER_EVENTS, "g", "7-0")]
        assert group.pending == 0
