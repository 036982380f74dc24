"""Notification service HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient

from services.notification.app import main
from services.notification.app.notifier import Notifier
from services.shared.events import EventType, OrderEvent


@pytest.fixture()
def notifier(monkeypatch):
    notifier = Notifier()
    monkeypatch.setattr(main, "notifier", notifier)
    return notifier


def test_recent_notifications(notifier):
    notifier.notify(OrderEvent(event_type=EventType.ORDER_CREATED, order_id=1, user_id=11, amount=75.0))
    notifier.notify(OrderEvent(event_type=EventType.PAYMENT_COMPLETED, order_id=1, user_id=11, amount=75.0))

    body = TestClient(main.app).get("/notifications/recent", params={"limit": 1}).json()

    assert len(body) == 1
    assert body[0]["subject"] == "Payment Successful"
    assert body[0]["channels"] == ["email", "push", "sms"]


def test_health_counts_sent(notifier):
    notifier.notify(OrderEvent(event_type=EventType.ORDER_CREATED, order_id=1, user_id=11))
    body = TestClient(main.app).get("/health").json()
    assert body == {"status": "ok", "service": "notification-service", "sent": 1}
