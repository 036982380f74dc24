"""
Shared — Event bus

Services never call each other. They publish envelopes to topics and
subscribe with a consumer group:

  ┌──────────────┐  XADD   ┌──────────────────┐  XREADGROUP  ┌───────────────────┐
  │ Order Service │ ──────▶ │  order-events    │ ───────────▶ │ payment-service-  │
  └──────────────┘         │  (Redis Stream)  │ ───────────▶ │ notification-...  │
                           └──────────────────┘              └───────────────────┘

Every group sees every message of the topic. Inside a group the messages
are spread over `concurrency` partition workers by a stable hash of the key
(the order id), so one order is never handled twice at the same time and
its events are handled in publish order.

A handler that raises is retried `max_retries` times, unless the error is a
DomainError (retrying a business rejection changes nothing). After that the
message goes to `<topic>.dlq` and is acknowledged.

A Stream keeps messages while a service is down: the group resumes from
its last acknowledged entry.
"""

import asyncio
import logging
import zlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import pydantic
import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .errors import DomainError
from .events import OrderEvent

logger = logging.getLogger(__name__)

Handler = Callable[[OrderEvent], Awaitable[None]]


@dataclass
class Message:
    topic: str
    key: str
    event: OrderEvent
    message_id: str | None = None


@dataclass
class DeadLetter:
    topic: str
    group: str
    key: str
    payload: str
    error: str
    attempts: int


def partition_for(key: str, partitions: int) -> int:
    """Stable across processes, unlike hash()."""
    return zlib.crc32(key.encode("utf-8")) % partitions


class EventBus(ABC):
    """Publish/subscribe contract shared by every service."""

    @abstractmethod
    async def publish(self, topic: str, key: str, event: OrderEvent) -> None:
        """Fire-and-forget. Must never raise into the caller."""

    @abstractmethod
    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        """Register a handler. Call before start()."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class NullEventBus(EventBus):
    """No-op bus for tests: records what was published and delivers nothing."""

    def __init__(self) -> None:
        self.published: list[tuple[str, str, OrderEvent]] = []
        self.subscriptions: list[tuple[str, str, Handler]] = []

    async def publish(self, topic: str, key: str, event: OrderEvent) -> None:
        self.published.append((topic, key, event))

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        self.subscriptions.append((topic, group, handler))

    def events(self, topic: str | None = None) -> list[OrderEvent]:
        return [e for t, _k, e in self.published if topic is None or t == topic]

    def event_types(self, topic: str | None = None) -> list[str]:
        return [e.event_type.value for e in self.events(topic)]


class ConsumerGroup:
    """One (topic, group) subscription and its partition workers."""

    def __init__(
        self,
        topic: str,
        group: str,
        handler: Handler,
        *,
        concurrency: int,
        max_retries: int,
        retry_delay: float,
        on_done: Callable[[Message], Awaitable[None]],
        on_dead_letter: Callable[[DeadLetter], Awaitable[None]],
        queue_size: int = 0,
    ):
        self.topic = topic
        self.group = group
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._on_done = on_done
        self._on_dead_letter = on_dead_letter
        self._queues: list[asyncio.Queue] = [
            asyncio.Queue(maxsize=queue_size) for _ in range(self.concurrency)
        ]
        self._tasks: list[asyncio.Task] = []
        self.pending = 0

    def start(self) -> None:
        if self._tasks:
            return
        for index, queue in enumerate(self._queues):
            self._tasks.append(
                asyncio.create_task(
                    self._worker(queue),
                    name=f"{self.group}:{self.topic}:{index}",
                )
            )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def put(self, message: Message) -> None:
        self.pending += 1
        await self._queues[partition_for(message.key, self.concurrency)].put(message)

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            message = await queue.get()
            try:
                await self._handle(message)
            finally:
                self.pending -= 1
                queue.task_done()

    async def _handle(self, message: Message) -> None:
        attempts = 0
        while True:
            attempts += 1
            try:
                await self.handler(message.event)
                break
            except DomainError as exc:
                logger.warning(
                    "[%s] %s for order %s rejected: %s",
                    self.group, message.event.event_type.value, message.key, exc,
                )
                await self._dead_letter(message, exc, attempts)
                break
            except Exception as exc:
                if attempts > self.max_retries:
                    logger.exception(
                        "[%s] %s for order %s failed after %d attempts",
                        self.group, message.event.event_type.value, message.key, attempts,
                    )
                    await self._dead_letter(message, exc, attempts)
                    break
                logger.warning(
                    "[%s] %s for order %s failed (attempt %d), retrying: %s",
                    self.group, message.event.event_type.value, message.key, attempts, exc,
                )
                await asyncio.sleep(self.retry_delay)
        try:
            await self._on_done(message)
        except Exception:
            logger.exception("[%s] could not acknowledge message %s", self.group, message.message_id)

    async def _dead_letter(self, message: Message, exc: Exception, attempts: int) -> None:
        letter = DeadLetter(
            topic=message.topic,
            group=self.group,
            key=message.key,
            payload=message.event.to_json(),
            error=f"{type(exc).__name__}: {exc}",
            attempts=attempts,
        )
        try:
            await self._on_dead_letter(letter)
        except Exception:
            logger.exception("[%s] could not dead-letter message for order %s", self.group, message.key)


class InMemoryEventBus(EventBus):
    """
    Single-process bus with the same group and partition semantics as
    RedisStreamBus. Used by the integration tests and for running every
    service in one process during development.
    """

    def __init__(self, concurrency: int = 3, max_retries: int = 3, retry_delay: float = 0.0):
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._groups: dict[str, list[ConsumerGroup]] = {}
        self.dead_letters: list[DeadLetter] = []
        self.published: list[tuple[str, str, OrderEvent]] = []
        self._started = False

    async def publish(self, topic: str, key: str, event: OrderEvent) -> None:
        try:
            self.published.append((topic, key, event))
            payload = event.to_json()
            for group in self._groups.get(topic, []):
                # Each group decodes its own copy, as it would off the wire.
                await group.put(Message(topic, key, OrderEvent.from_json(payload)))
        except Exception:
            logger.exception("Failed to publish %s to %s", event.event_type.value, topic)

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        groups = self._groups.setdefault(topic, [])
        if any(g.group == group for g in groups):
            raise ValueError(f"group {group!r} already subscribed to {topic!r}")
        consumer = ConsumerGroup(
            topic,
            group,
            handler,
            concurrency=self.concurrency,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            on_done=self._ack,
            on_dead_letter=self._record_dead_letter,
        )
        groups.append(consumer)
        if self._started:
            consumer.start()

    async def start(self) -> None:
        self._started = True
        for group in self._all_groups():
            group.start()

    async def stop(self) -> None:
        self._started = False
        for group in self._all_groups():
            await group.stop()

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait until every published message (and its follow-ups) was handled."""

        async def _quiet() -> None:
            while any(group.pending for group in self._all_groups()):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_quiet(), timeout)

    def event_types(self, topic: str | None = None) -> list[str]:
        return [e.event_type.value for t, _k, e in self.published if topic is None or t == topic]

    def _all_groups(self) -> list[ConsumerGroup]:
        return [group for groups in self._groups.values() for group in groups]

    async def _ack(self, message: Message) -> None:
        pass

    async def _record_dead_letter(self, letter: DeadLetter) -> None:
        self.dead_letters.append(letter)


class RedisStreamBus(EventBus):
    """EventBus over Redis Streams consumer groups."""

    def __init__(
        self,
        redis: aioredis.Redis,
        consumer_name: str,
        *,
        concurrency: int = 3,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        block_ms: int = 1000,
        maxlen: int = 100_000,
    ):
        self.redis = redis
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.block_ms = block_ms
        self.maxlen = maxlen
        self._groups: list[ConsumerGroup] = []
        self._readers: list[asyncio.Task] = []
        self._shutdown = asyncio.Event()

    async def publish(self, topic: str, key: str, event: OrderEvent) -> None:
        try:
            await self.redis.xadd(
                topic,
                {"key": key, "event": event.to_json()},
                maxlen=self.maxlen,
                approximate=True,
            )
            logger.debug("Published %s to %s (key=%s)", event.event_type.value, topic, key)
        except Exception:
            # The local transaction is already committed; the saga stalls
            # for this order but the caller must not fail.
            logger.exception("Failed to publish %s to %s (key=%s)", event.event_type.value, topic, key)

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        if any(g.topic == topic and g.group == group for g in self._groups):
            raise ValueError(f"group {group!r} already subscribed to {topic!r}")
        self._groups.append(
            ConsumerGroup(
                topic,
                group,
                handler,
                concurrency=self.concurrency,
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                on_done=self._make_ack(group),
                on_dead_letter=self._dead_letter,
                queue_size=100,
            )
        )

    async def start(self) -> None:
        self._shutdown.clear()
        for group in self._groups:
            await self._ensure_group(group.topic, group.group)
            group.start()
            self._readers.append(asyncio.create_task(self._read_loop(group)))
            logger.info("Subscribed %s to %s", group.group, group.topic)

    async def stop(self) -> None:
        self._shutdown.set()
        for task in self._readers:
            task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._readers = []
        for group in self._groups:
            await group.stop()

    async def _ensure_group(self, topic: str, group: str) -> None:
        try:
            await self.redis.xgroup_create(topic, group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def _read_loop(self, group: ConsumerGroup) -> None:
        # "0" first: re-deliver entries this consumer read but never acked.
        last_id = "0"
        while not self._shutdown.is_set():
            try:
                response = await self.redis.xreadgroup(
                    group.group,
                    self.consumer_name,
                    {group.topic: last_id},
                    count=group.concurrency * 10,
                    block=self.block_ms,
                )
            except RedisError:
                logger.exception("[%s] read from %s failed", group.group, group.topic)
                await asyncio.sleep(1.0)
                continue

            entries = [entry for _stream, stream_entries in response or [] for entry in stream_entries]
            if last_id != ">":
                if not entries:
                    last_id = ">"
                    continue
                last_id = entries[-1][0]
            for message_id, fields in entries:
                try:
                    await self._dispatch(group, message_id, fields)
                except Exception:
                    logger.exception(
                        "[%s] could not dispatch message %s from %s", group.group, message_id, group.topic
                    )

    async def _dispatch(self, group: ConsumerGroup, message_id: str, fields: dict | None) -> None:
        if fields is None:
            # Pending entry whose body was trimmed from the stream.
            logger.error("[%s] message %s on %s has no body", group.group, message_id, group.topic)
            await self._dead_letter(
                DeadLetter(group.topic, group.group, "", "", "MissingBody: entry trimmed", 0)
            )
            await self.redis.xack(group.topic, group.group, message_id)
            return
        key = fields.get("key", "")
        raw = fields.get("event", "")
        try:
            event = OrderEvent.from_json(raw)
        except pydantic.ValidationError as exc:
            logger.error("[%s] undecodable message %s on %s: %s", group.group, message_id, group.topic, exc)
            await self._dead_letter(
                DeadLetter(group.topic, group.group, key, raw, f"ValidationError: {exc}", 0)
            )
            await self.redis.xack(group.topic, group.group, message_id)
            return
        await group.put(Message(group.topic, key or event.key, event, message_id))

    def _make_ack(self, group_name: str) -> Callable[[Message], Awaitable[None]]:
        async def _ack(message: Message) -> None:
            if message.message_id is not None:
                await self.redis.xack(message.topic, group_name, message.message_id)

        return _ack

    async def _dead_letter(self, letter: DeadLetter) -> None:
        await self.redis.xadd(
            f"{letter.topic}.dlq",
            {
                "group": letter.group,
                "key": letter.key,
                "event": letter.payload,
                "error": letter.error,
                "attempts": str(letter.attempts),
            },
            maxlen=self.maxlen,
            approximate=True,
        )
