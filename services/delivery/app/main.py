"""
Delivery Service — FastAPI entry point

Owns delivery partners and deliveries. Assignment is event driven
(PAYMENT_COMPLETED); couriers report progress through the status endpoint,
which fans out as delivery-events to the order, payment and notification
services.
"""

import os
import socket
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.shared.api import install_error_handlers
from services.shared.bus import EventBus, NullEventBus, RedisStreamBus
from services.shared.errors import NotFoundError
from services.shared.logging import configure_logging

from . import commands, queries, subscriber
from .schema import DeliveryStatus, PartnerStatus, VehicleType, metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CONSUMER_CONCURRENCY = int(os.environ.get("CONSUMER_CONCURRENCY", "3"))
CONSUMER_MAX_RETRIES = int(os.environ.get("CONSUMER_MAX_RETRIES", "3"))
DELIVERY_ETA_MINUTES = int(os.environ.get("DELIVERY_ETA_MINUTES", "30"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

bus: EventBus = NullEventBus()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global bus
    configure_logging("delivery-service")

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    bus = RedisStreamBus(
        redis_pool,
        consumer_name=f"delivery-service-{socket.gethostname()}",
        concurrency=CONSUMER_CONCURRENCY,
        max_retries=CONSUMER_MAX_RETRIES,
    )
    subscriber.register(bus, async_session, DELIVERY_ETA_MINUTES)
    await bus.start()
    yield
    await bus.stop()
    await redis_pool.aclose()


app = FastAPI(title="Delivery Service", lifespan=lifespan)
install_error_handlers(app)


class RegisterPartnerRequest(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    vehicle_type: VehicleType
    vehicle_number: str | None = None
    rating: float = Field(default=5.0, ge=0, le=5)


# ── Deliveries ───────────────────────────────────

@app.get("/deliveries/order/{order_id}")
async def get_delivery_by_order(order_id: int):
    async with async_session() as session:
        delivery = await queries.get_delivery_by_order(session, order_id)
        if not delivery:
            raise NotFoundError(f"Delivery not found for order ID: {order_id}")
        return delivery


@app.get("/deliveries/partner/{partner_id}")
async def list_partner_deliveries(partner_id: int):
    async with async_session() as session:
        return await queries.list_partner_deliveries(session, partner_id)


@app.put("/deliveries/{delivery_id}/status")
async def update_delivery_status(delivery_id: int, status: DeliveryStatus):
    async with async_session() as session:
        return await commands.update_delivery_status(session, bus, delivery_id, status)


@app.post("/deliveries/{order_id}/reassign")
async def reassign_delivery(order_id: int):
    async with async_session() as session:
        return await commands.reassign_delivery_partner(session, bus, order_id)


# ── Partners ─────────────────────────────────────

@app.post("/partners", status_code=201)
async def register_partner(req: RegisterPartnerRequest):
    async with async_session() as session:
        return await commands.register_partner(
            session,
            name=req.name,
            phone=req.phone,
            vehicle_type=req.vehicle_type,
            vehicle_number=req.vehicle_number,
            rating=req.rating,
        )


@app.get("/partners")
async def list_partners(status: PartnerStatus | None = Query(default=None)):
    async with async_session() as session:
        return await queries.list_partners(session, status.value if status else None)


@app.put("/partners/{partner_id}/status")
async def set_partner_status(partner_id: int, status: PartnerStatus):
    async with async_session() as session:
        return await commands.set_partner_status(session, partner_id, status)


@app.post("/partners/{partner_id}/available")
async def mark_partner_available(partner_id: int):
    async with async_session() as session:
        return await commands.mark_partner_available(session, partner_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "delivery-service"}
