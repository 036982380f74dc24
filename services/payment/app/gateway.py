"""
Payment Service — Simulated payment gateway

Stands in for a card processor: waits a random, bounded time and then
succeeds with a fixed probability. The wait is an asyncio sleep, so only
the consumer worker handling this order waits; other orders keep flowing.
"""

import asyncio
import random
from dataclasses import dataclass
from uuid import uuid4


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: str | None = None
    gateway_response: str | None = None


class SimulatedGateway:
    def __init__(
        self,
        success_rate: float = 0.95,
        min_latency: float = 2.0,
        max_latency: float = 3.0,
        rng: random.Random | None = None,
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        if min_latency < 0 or max_latency < min_latency:
            raise ValueError("latency bounds must satisfy 0 <= min <= max")
        self.success_rate = success_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.rng = rng or random.Random()
        self.charges = 0

    async def charge(self, order_id: int, amount: float, method: str) -> ChargeResult:
        self.charges += 1
        await asyncio.sleep(self.rng.uniform(self.min_latency, self.max_latency))

        if self.rng.random() < self.success_rate:
            return ChargeResult(
                success=True,
                transaction_id=f"TXN{uuid4().hex[:16].upper()}",
                gateway_response="Payment processed successfully",
            )
        return ChargeResult(success=False, gateway_response="Insufficient funds")
