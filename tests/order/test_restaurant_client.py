"""RestaurantClient over httpx.MockTransport."""

import httpx
import pytest

from services.order.app.circuit_breaker import BreakerState, CircuitBreaker
from services.order.app.restaurant_client import FALLBACK_NAME, RestaurantClient

BASE_URL = "http://restaurant-service:8080"


def _client(handler, breaker=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    breaker = breaker or CircuitBreaker("restaurantService", sliding_window_size=4)
    return RestaurantClient(http, BASE_URL, breaker), breaker


class TestRestaurantClient:
    async def test_available_restaurant(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": 4, "name": "Noodle Bar", "available": True})

        client, _ = _client(handler)
        info = await client.get_restaurant(4)

        assert info.name == "Noodle Bar"
        assert info.available is True
        assert info.degraded is False
        assert str(requests[0].url) == f"{BASE_URL}/api/restaurants/4"

    async def test_unknown_restaurant_is_none_and_not_a_failure(self):
        client, breaker = _client(lambda request: httpx.Response(404))

        assert await client.get_restaurant(99) is None
        assert breaker.failure_rate == 0.0

    async def test_server_error_uses_fallback(self):
        client, breaker = _client(lambda request: httpx.Response(500))

        info = await client.get_restaurant(4)

        assert info.id == 4
        assert info.name == FALLBACK_NAME
        assert info.available is True
        assert info.degraded is True
        assert breaker.failure_rate == 100.0

    async def test_connection_error_uses_fallback(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = _client(handler)
        info = await client.get_restaurant(4)
        assert info.degraded is True

    async def test_open_circuit_skips_the_call(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        client, breaker = _client(handler)
        for _ in range(4):
            await client.get_restaurant(4)
        assert breaker.state == BreakerState.OPEN

        info = await client.get_restaurant(4)
        assert info.degraded is True
        assert len(calls) == 4

    @pytest.mark.parametrize("available", [True, False])
    async def test_availability_passes_through(self, available):
        client, _ = _client(
            lambda request: httpx.Response(200, json={"id": 1, "name": "Diner", "available": available})
        )
        assert (await client.get_restaurant(1)).available is available
