"""
Order Service — Restaurant availability client

The only synchronous cross-service call in the system. It goes through the
circuit breaker. When the restaurant service is down or the circuit is
open, the fallback optimistically reports the restaurant as available so
order placement keeps working.
"""

import logging

import httpx
from pydantic import BaseModel

from .circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

FALLBACK_NAME = "Restaurant (Service Unavailable)"


class RestaurantInfo(BaseModel):
    id: int
    name: str = ""
    available: bool = False
    degraded: bool = False


class RestaurantClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str, breaker: CircuitBreaker):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker

    async def get_restaurant(self, restaurant_id: int) -> RestaurantInfo | None:
        """
        Look up a restaurant. Returns None for an unknown restaurant.

        A 404 is an answer, not a failure, so it does not count against the
        breaker. Connection errors, timeouts and 5xx responses do.
        """

        async def _fetch() -> RestaurantInfo | None:
            resp = await self.http.get(f"{self.base_url}/api/restaurants/{restaurant_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return RestaurantInfo.model_validate(resp.json())

        def _fallback(exc: Exception) -> RestaurantInfo:
            logger.warning(
                "Using fallback for restaurant %s. Reason: %s", restaurant_id, exc
            )
            return RestaurantInfo(
                id=restaurant_id, name=FALLBACK_NAME, available=True, degraded=True
            )

        return await self.breaker.call(_fetch, _fallback)
