"""
Notification Service — FastAPI entry point

Stateless: no database, only the bus subscription and a short history of
what was sent.
"""

import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Query

from services.shared.bus import EventBus, NullEventBus, RedisStreamBus
from services.shared.logging import configure_logging

from . import subscriber
from .notifier import Notifier

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CONSUMER_CONCURRENCY = int(os.environ.get("CONSUMER_CONCURRENCY", "3"))
CONSUMER_MAX_RETRIES = int(os.environ.get("CONSUMER_MAX_RETRIES", "3"))

notifier = Notifier()
bus: EventBus = NullEventBus()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global bus
    configure_logging("notification-service")

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    bus = RedisStreamBus(
        redis_pool,
        consumer_name=f"notification-service-{socket.gethostname()}",
        concurrency=CONSUMER_CONCURRENCY,
        max_retries=CONSUMER_MAX_RETRIES,
    )
    subscriber.register(bus, notifier)
    await bus.start()
    yield
    await bus.stop()
    await redis_pool.aclose()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/notifications/recent")
async def recent_notifications(limit: int = Query(default=20, ge=1, le=100)):
    return [
        {
            "order_id": n.order_id,
            "user_id": n.user_id,
            "event_type": n.event_type,
            "subject": n.subject,
            "message": n.message,
            "channels": list(n.channels),
            "sent_at": n.sent_at.isoformat(),
        }
        for n in notifier.recent(limit)
    ]


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notification-service", "sent": len(notifier.history)}
