from __future__ import annotations

import inspect
import logging
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

import anyio

from taskhub.infra.metrics import metrics


logger = logging.getLogger("taskhub.circuit")

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    pass


class CircuitBreaker(Generic[T]):
    """Fail fast against a flaky payment processor.

    ``failure_threshold`` failures inside a sliding ``window_seconds`` trip the
    breaker. Once ``recovery_time`` has passed, up to ``half_open_max_calls``
    trial calls go through; one success closes it, one failure reopens it.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = timeout_seconds if timeout_seconds is None else max(0.01, timeout_seconds)
        self._state = CircuitState.CLOSED
        self._tripped_at = 0.0
        self._recent_failures: deque[float] = deque()
        self._trial_calls = 0
        self._guard = anyio.Lock()
        metrics.record_circuit_state(self.name, self._state.value)

    @property
    def state(self) -> str:
        return self._state.value

    def _move_to(self, state: CircuitState) -> None:
        if state is self._state:
            return
        logger.info(
            "circuit_state_changed",
            extra={"extra": {"name": self.name, "from": self._state.value, "to": state.value}},
        )
        self._state = state
        metrics.record_circuit_state(self.name, state.value)

    async def call(self, fn: Callable[..., T | Awaitable[T]], *args, **kwargs) -> T:
        await self._admit()
        try:
            outcome = fn(*args, **kwargs)
            if inspect.isawaitable(outcome):
                if self.timeout_seconds is None:
                    outcome = await outcome
                else:
                    with anyio.fail_after(self.timeout_seconds):
                        outcome = await outcome
        except Exception as exc:  # noqa: BLE001
            await self._on_failure()
            logger.warning(
                "circuit_call_failed",
                extra={"extra": {"name": self.name, "state": self.state, "error": type(exc).__name__}},
            )
            raise
        await self._on_success()
        return outcome  # type: ignore[return-value]

    async def _admit(self) -> None:
        async with self._guard:
            if self._state is CircuitState.OPEN:
                if time.monotonic() - self._tripped_at < self.recovery_time:
                    raise CircuitBreakerOpenError(f"circuit_open:{self.name}")
                self._trial_calls = 0
                self._move_to(CircuitState.HALF_OPEN)
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(f"circuit_half_open_limit:{self.name}")
                self._trial_calls += 1

    async def _on_failure(self) -> None:
        async with self._guard:
            now = time.monotonic()
            self._recent_failures.append(now)
            while self._recent_failures and now - self._recent_failures[0] > self.window_seconds:
                self._recent_failures.popleft()
            trip = (
                self._state is CircuitState.HALF_OPEN
                or len(self._recent_failures) >= self.failure_threshold
            )
            if trip:
                self._tripped_at = now
                self._trial_calls = 0
                self._move_to(CircuitState.OPEN)

    async def _on_success(self) -> None:
        async with self._guard:
            self._recent_failures.clear()
            self._trial_calls = 0
            self._move_to(CircuitState.CLOSED)
