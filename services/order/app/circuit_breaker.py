"""
Order Service — Circuit breaker

Guards the one synchronous call the order service makes (restaurant
availability) so that a restaurant-service outage can't fail order
placement.

  ┌────────┐  failure rate ≥ threshold  ┌──────┐
  │ CLOSED │ ─────────────────────────▶ │ OPEN │ ◀───────────┐
  └────────┘                            └──────┘             │
      ▲                                    │ wait_duration   │ any trial fails
      │ all trial calls succeed            ▼                 │
      └──────────────────────────── ┌───────────┐ ───────────┘
                                    │ HALF_OPEN │
                                    └───────────┘

CLOSED keeps a count-based sliding window of the last N outcomes. OPEN
answers every call with the fallback without touching the dependency.
HALF_OPEN lets a fixed number of trial calls through.

State lives behind a lock and is shared by every request in the process.
The guarded operation itself runs outside the lock.
"""

import inspect
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from services.shared.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        sliding_window_size: int = 10,
        failure_rate_threshold: float = 50.0,
        minimum_number_of_calls: int | None = None,
        wait_duration: float = 10.0,
        permitted_calls_in_half_open: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        if sliding_window_size < 1 or permitted_calls_in_half_open < 1:
            raise ValueError("window size and half-open calls must be at least 1")
        self.name = name
        self.sliding_window_size = sliding_window_size
        self.failure_rate_threshold = failure_rate_threshold
        self.minimum_number_of_calls = min(
            minimum_number_of_calls or sliding_window_size, sliding_window_size
        )
        self.wait_duration = wait_duration
        self.permitted_calls_in_half_open = permitted_calls_in_half_open
        self._clock = clock

        self._lock = threading.Lock()
        self._window: deque[bool] = deque(maxlen=sliding_window_size)  # True = failed
        self._state = BreakerState.CLOSED
        self._opened_at = 0.0
        self._trial_permits = 0
        self._trial_successes = 0

    # ── public API ───────────────────────────────

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._expire_open_state()
            return self._state

    @property
    def failure_rate(self) -> float:
        with self._lock:
            return self._failure_rate()

    def snapshot(self) -> dict:
        with self._lock:
            self._expire_open_state()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_rate": round(self._failure_rate(), 2),
                "buffered_calls": len(self._window),
                "failed_calls": sum(self._window),
            }

    async def call(
        self,
        operation: Callable[[], Awaitable[Any]],
        fallback: Callable[[Exception], Any],
    ) -> Any:
        """
        Run `operation` if the breaker allows it.

        Returns the operation's result on success. Otherwise returns
        `fallback(exc)`, where `exc` is what the operation raised or a
        CircuitOpenError when the call was short-circuited. Never raises the
        operation's exception.
        """
        if not self._acquire_permission():
            exc = CircuitOpenError(f"Circuit breaker '{self.name}' is {self._state.value}")
            logger.warning("%s short-circuited: %s", self.name, exc)
            return await self._run_fallback(fallback, exc)

        try:
            result = await operation()
        except Exception as exc:
            self._record(failed=True)
            logger.warning("%s call failed: %s", self.name, exc)
            return await self._run_fallback(fallback, exc)

        self._record(failed=False)
        return result

    # ── internals ────────────────────────────────

    @staticmethod
    async def _run_fallback(fallback: Callable[[Exception], Any], exc: Exception) -> Any:
        result = fallback(exc)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _acquire_permission(self) -> bool:
        with self._lock:
            self._expire_open_state()
            if self._state == BreakerState.OPEN:
                return False
            if self._state == BreakerState.HALF_OPEN:
                if self._trial_permits >= self.permitted_calls_in_half_open:
                    return False
                self._trial_permits += 1
            return True

    def _record(self, failed: bool) -> None:
        with self._lock:
            self._window.append(failed)
            if self._state == BreakerState.HALF_OPEN:
                if failed:
                    self._transition(BreakerState.OPEN)
                    return
                self._trial_successes += 1
                if self._trial_successes >= self.permitted_calls_in_half_open:
                    self._transition(BreakerState.CLOSED)
            elif self._state == BreakerState.CLOSED:
                if (
                    len(self._window) >= self.minimum_number_of_calls
                    and self._failure_rate() >= self.failure_rate_threshold
                ):
                    self._transition(BreakerState.OPEN)

    def _failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return 100.0 * sum(self._window) / len(self._window)

    def _expire_open_state(self) -> None:
        # caller holds the lock
        if (
            self._state == BreakerState.OPEN
            and self._clock() - self._opened_at >= self.wait_duration
        ):
            self._transition(BreakerState.HALF_OPEN)

    def _transition(self, target: BreakerState) -> None:
        # caller holds the lock
        previous = self._state
        self._state = target
        if target == BreakerState.OPEN:
            self._opened_at = self._clock()
        elif target == BreakerState.HALF_OPEN:
            self._trial_permits = 0
            self._trial_successes = 0
        elif target == BreakerState.CLOSED:
            self._window.clear()
        logger.warning(
            "Circuit breaker %s: %s -> %s (failure rate %.1f%%)",
            self.name, previous.value, target.value, self._failure_rate(),
        )
