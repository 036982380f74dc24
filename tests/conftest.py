import os

# Service entry points read DATABASE_URL at import time.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test-import.db")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from services.delivery.app.schema import metadata as delivery_metadata
from services.order.app.restaurant_client import RestaurantInfo
from services.order.app.schema import metadata as order_metadata
from services.payment.app.gateway import SimulatedGateway
from services.payment.app.schema import metadata as payment_metadata
from services.shared.bus import NullEventBus

ALL_METADATA = (order_metadata, payment_metadata, delivery_metadata)


def create_schema(db_path) -> None:
    # Plain sqlite3 engine: works whether or not an event loop is running.
    sync_engine = create_engine(f"sqlite:///{db_path}")
    for metadata in ALL_METADATA:
        metadata.create_all(sync_engine)
    sync_engine.dispose()


class StubRestaurants:
    """Stands in for RestaurantClient; answers from a fixed table."""

    def __init__(self):
        self.known: dict[int, RestaurantInfo] = {}
        self.default_available = True
        self.calls: list[int] = []

    async def get_restaurant(self, restaurant_id: int) -> RestaurantInfo | None:
        self.calls.append(restaurant_id)
        if restaurant_id in self.known:
            return self.known[restaurant_id]
        return RestaurantInfo(
            id=restaurant_id, name="Test Kitchen", available=self.default_available
        )


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture()
def engine(db_path):
    create_schema(db_path)
    return create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def bus():
    return NullEventBus()


@pytest.fixture()
def restaurants():
    return StubRestaurants()


@pytest.fixture()
def approving_gateway():
    return SimulatedGateway(success_rate=1.0, min_latency=0.0, max_latency=0.0)


@pytest.fixture()
def declining_gateway():
    return SimulatedGateway(success_rate=0.0, min_latency=0.0, max_latency=0.0)
