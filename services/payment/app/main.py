"""
Payment Service — FastAPI entry point

Charges orders as they are created and refunds them when delivery fails.
Both are driven by events; the HTTP surface is for reads and manual refunds.
"""

import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.shared.api import install_error_handlers
from services.shared.bus import EventBus, NullEventBus, RedisStreamBus
from services.shared.errors import NotFoundError
from services.shared.logging import configure_logging

from . import commands, queries, subscriber
from .gateway import SimulatedGateway
from .schema import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CONSUMER_CONCURRENCY = int(os.environ.get("CONSUMER_CONCURRENCY", "3"))
CONSUMER_MAX_RETRIES = int(os.environ.get("CONSUMER_MAX_RETRIES", "3"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

gateway = SimulatedGateway(
    success_rate=float(os.environ.get("GATEWAY_SUCCESS_RATE", "0.95")),
    min_latency=float(os.environ.get("GATEWAY_MIN_LATENCY", "2.0")),
    max_latency=float(os.environ.get("GATEWAY_MAX_LATENCY", "3.0")),
)

bus: EventBus = NullEventBus()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global bus
    configure_logging("payment-service")

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    bus = RedisStreamBus(
        redis_pool,
        consumer_name=f"payment-service-{socket.gethostname()}",
        concurrency=CONSUMER_CONCURRENCY,
        max_retries=CONSUMER_MAX_RETRIES,
    )
    subscriber.register(bus, async_session, gateway)
    await bus.start()
    yield
    await bus.stop()
    await redis_pool.aclose()


app = FastAPI(title="Payment Service", lifespan=lifespan)
install_error_handlers(app)


@app.get("/payments/order/{order_id}")
async def get_payment_by_order(order_id: int):
    async with async_session() as session:
        payment = await queries.get_payment_by_order(session, order_id)
        if not payment:
            raise NotFoundError(f"Payment not found for order ID: {order_id}")
        return payment


@app.get("/payments/user/{user_id}")
async def list_user_payments(user_id: int):
    async with async_session() as session:
        return await queries.list_user_payments(session, user_id)


@app.post("/payments/{order_id}/refund")
async def refund_payment(order_id: int):
    async with async_session() as session:
        return await commands.process_refund(session, bus, order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service"}
