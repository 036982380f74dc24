"""
Order Service — FastAPI entry point

Owns the order state machine. Placing an order is the only place where a
synchronous call leaves the service (restaurant availability, behind a
circuit breaker). Everything else arrives and leaves as events:

  POST /orders ──▶ order-events: ORDER_CREATED ──▶ payment / notification
  payment-events ──▶ status sync ──▶ order-events: PAYMENT_COMPLETED ──▶ delivery
  delivery-events ──▶ status sync (READY / PICKED_UP / DELIVERED)
"""

import os
import socket
from contextlib import asynccontextmanager

import httpx
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
from .aggregate import OrderStatus, PaymentStatus
from .circuit_breaker import CircuitBreaker
from .restaurant_client import RestaurantClient
from .schema import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
RESTAURANT_SERVICE_URL = os.environ.get("RESTAURANT_SERVICE_URL", "http://restaurant-service:8080")
CONSUMER_CONCURRENCY = int(os.environ.get("CONSUMER_CONCURRENCY", "3"))
CONSUMER_MAX_RETRIES = int(os.environ.get("CONSUMER_MAX_RETRIES", "3"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

breaker = CircuitBreaker(
    "restaurantService",
    sliding_window_size=int(os.environ.get("CB_SLIDING_WINDOW", "10")),
    failure_rate_threshold=float(os.environ.get("CB_FAILURE_RATE", "50")),
    wait_duration=float(os.environ.get("CB_WAIT_SECONDS", "10")),
    permitted_calls_in_half_open=int(os.environ.get("CB_HALF_OPEN_CALLS", "3")),
)

bus: EventBus = NullEventBus()
restaurants: RestaurantClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global bus, restaurants
    configure_logging("order-service")

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http = httpx.AsyncClient(timeout=5.0)
    bus = RedisStreamBus(
        redis_pool,
        consumer_name=f"order-service-{socket.gethostname()}",
        concurrency=CONSUMER_CONCURRENCY,
        max_retries=CONSUMER_MAX_RETRIES,
    )
    restaurants = RestaurantClient(http, RESTAURANT_SERVICE_URL, breaker)
    subscriber.register(bus, async_session)
    await bus.start()
    yield
    await bus.stop()
    await http.aclose()
    await redis_pool.aclose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────

class OrderItemRequest(BaseModel):
    menu_item_id: int
    item_name: str = ""
    quantity: int = Field(gt=0)
    price: float = Field(ge=0)


class CreateOrderRequest(BaseModel):
    user_id: int
    restaurant_id: int
    items: list[OrderItemRequest] = Field(min_length=1)
    delivery_fee: float | None = Field(default=None, ge=0)
    discount: float | None = Field(default=None, ge=0)
    address_id: int | None = None
    special_instructions: str | None = None


# ── Command Endpoints ────────────────────────────

@app.post("/orders", status_code=201)
async def create_order(req: CreateOrderRequest):
    async with async_session() as session:
        return await commands.create_order(
            session, bus, restaurants,
            user_id=req.user_id,
            restaurant_id=req.restaurant_id,
            items=[item.model_dump() for item in req.items],
            delivery_fee=req.delivery_fee,
            discount=req.discount,
            address_id=req.address_id,
            special_instructions=req.special_instructions,
        )


@app.put("/orders/{order_id}/status")
async def update_order_status(order_id: int, status: OrderStatus):
    async with async_session() as session:
        return await commands.update_status(session, bus, order_id, status)


@app.put("/orders/{order_id}/payment-status")
async def update_payment_status(
    order_id: int,
    payment_status: PaymentStatus = Query(alias="paymentStatus"),
):
    async with async_session() as session:
        return await commands.update_payment_status(session, bus, order_id, payment_status)


@app.put("/orders/{order_id}/assign-delivery")
async def assign_delivery(
    order_id: int,
    delivery_partner_id: int = Query(alias="deliveryPartnerId"),
):
    async with async_session() as session:
        return await commands.assign_delivery_partner(session, bus, order_id, delivery_partner_id)


@app.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: int):
    async with async_session() as session:
        return await commands.cancel_order(session, bus, order_id)


# ── Query Endpoints ──────────────────────────────

@app.get("/orders")
async def list_orders():
    async with async_session() as session:
        return await queries.list_orders(session)


@app.get("/orders/user/{user_id}")
async def list_user_orders(user_id: int):
    async with async_session() as session:
        return await queries.list_user_orders(session, user_id)


@app.get("/orders/{order_id}")
async def get_order(order_id: int):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise NotFoundError(f"Order not found with ID: {order_id}")
        return order


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "order-service",
        "circuit_breaker": breaker.snapshot(),
    }
