"""Payment service HTTP endpoints."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from services.payment.app import commands, main
from services.shared.bus import NullEventBus
from services.shared.events import EventType, OrderEvent


@pytest.fixture()
def client(monkeypatch, session_factory, bus):
    monkeypatch.setattr(main, "async_session", session_factory)
    monkeypatch.setattr(main, "bus", bus)
    return TestClient(main.app)


def _charge(session_factory, gateway, order_id: int, user_id: int = 11) -> None:
    async def run():
        async with session_factory() as session:
            event = OrderEvent(
                event_type=EventType.ORDER_CREATED, order_id=order_id, user_id=user_id, amount=75.0
            )
            await commands.process_payment(session, NullEventBus(), gateway, event)

    asyncio.run(run())


class TestPaymentEndpoints:
    def test_get_by_order(self, client, session_factory, approving_gateway):
        _charge(session_factory, approving_gateway, 1)
        response = client.get("/payments/order/1")
        assert response.status_code == 200
        assert response.json()["status"] == "SUCCESS"

    def test_missing_payment_is_404(self, client):
        response = client.get("/payments/order/1")
        assert response.status_code == 404
        assert response.text == "Payment not found for order ID: 1"

    def test_list_by_user(self, client, session_factory, approving_gateway):
        _charge(session_factory, approving_gateway, 1)
        _charge(session_factory, approving_gateway, 2)
        _charge(session_factory, approving_gateway, 3, user_id=12)
        assert [p["order_id"] for p in client.get("/payments/user/11").json()] == [1, 2]

    def test_refund(self, client, bus, session_factory, approving_gateway):
        _charge(session_factory, approving_gateway, 1)
        response = client.post("/payments/1/refund")
        assert response.status_code == 200
        assert response.json()["status"] == "REFUNDED"
        assert bus.event_types() == ["REFUND_COMPLETED"]

    def test_refund_of_failed_payment_is_conflict(self, client, session_factory, declining_gateway):
        _charge(session_factory, declining_gateway, 1)
        response = client.post("/payments/1/refund")
        assert response.status_code == 409

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok", "service": "payment-service"}
