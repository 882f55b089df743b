"""Consecutive-failure circuit breaker for language-model providers.

Closed: calls pass. After ``threshold`` consecutive failures the breaker opens
and rejects calls until ``cooldown_seconds`` have elapsed, then admits a
single half-open trial call, rejecting other callers while it is in flight. A
success in any state closes it and clears the counter; a failed trial call
re-opens it for another cooldown.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Callable

from loguru import logger


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.threshold = max(1, threshold)
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._trial_started = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))

    async def allow(self) -> bool:
        """Whether a call may proceed. Moves Open to HalfOpen once the cooldown has passed.

        Only one caller gets the half-open trial. A trial that never reports
        back is abandoned after another cooldown.
        """
        async with self._lock:
            now = self._clock()
            if self._state == CircuitState.OPEN:
                if now - self._opened_at < self.cooldown_seconds:
                    return False
                self._state = CircuitState.HALF_OPEN
                logger.info(f"Circuit '{self.name}' half-open, trying provider")
            elif self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight and now - self._trial_started < self.cooldown_seconds:
                    return False
            else:
                return True
            self._trial_in_flight = True
            self._trial_started = now
            return True

    async def record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit '{self.name}' closed after successful call")
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False

    async def record_failure(self) -> None:
        async with self._lock:
            self._consecutive_failures += 1
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit '{self.name}' opened after {self._consecutive_failures} consecutive failures"
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    async def reset(self) -> None:
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False
