"""Per-domain politeness for outbound fetches.

A global semaphore caps total in-flight requests and a smaller per-domain
semaphore caps simultaneous requests to one host. Consecutive requests to the
same host are spaced by a random delay between the configured bounds. A
per-domain failure counter opens that domain's circuit once it reaches the
threshold; open circuits fail fast until they auto-reset.
"""

from __future__ import annotations

import asyncio
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable
from urllib.parse import urlparse

from loguru import logger

from deepcite.config import settings

MAX_BACKOFF_SECONDS = 60.0


@dataclass(frozen=True, slots=True)
class DomainState:
    domain: str
    consecutive_failures: int
    circuit_open: bool


def get_domain(url: str) -> str:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return "unknown"
    return host.lower() if host else "unknown"


class CourtesyScheduler:
    def __init__(
        self,
        *,
        max_concurrent_fetches: int | None = None,
        max_concurrent_per_domain: int | None = None,
        min_delay_seconds: float | None = None,
        max_delay_seconds: float | None = None,
        failure_threshold: int | None = None,
        reset_after_seconds: float | None = None,
        backoff_base_seconds: float | None = None,
        max_retries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.max_concurrent_fetches = max_concurrent_fetches or settings.max_concurrent_fetches
        self.max_concurrent_per_domain = min(
            max_concurrent_per_domain or settings.max_concurrent_per_domain,
            self.max_concurrent_fetches,
        )
        self.min_delay = settings.min_domain_delay_seconds if min_delay_seconds is None else min_delay_seconds
        self.max_delay = settings.max_domain_delay_seconds if max_delay_seconds is None else max_delay_seconds
        self.max_delay = max(self.max_delay, self.min_delay)
        self.failure_threshold = failure_threshold or settings.circuit_breaker_threshold
        self.reset_after = settings.circuit_reset_seconds if reset_after_seconds is None else reset_after_seconds
        self.backoff_base = (
            settings.backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self._clock = clock
        self.sleep = sleep
        self._rng = rng

        self._global = asyncio.Semaphore(self.max_concurrent_fetches)
        self._domain_semaphores: dict[str, asyncio.Semaphore] = {}
        self._next_slot_at: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self._opened_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    # -- circuit state -------------------------------------------------

    async def is_circuit_broken(self, domain: str) -> bool:
        async with self._lock:
            return self._is_open_locked(domain)

    def _is_open_locked(self, domain: str) -> bool:
        opened = self._opened_at.get(domain)
        if opened is None:
            return False
        if self._clock() - opened >= self.reset_after:
            # Transient failures should not block a host forever.
            del self._opened_at[domain]
            self._failures[domain] = 0
            logger.info(f"Circuit for {domain} auto-reset after {self.reset_after:.0f}s")
            return False
        return True

    async def record_success(self, url: str) -> None:
        domain = get_domain(url)
        async with self._lock:
            self._failures[domain] = 0
            self._opened_at.pop(domain, None)

    async def record_failure(self, url: str, http_status: int = 0) -> float:
        """Count a failure and return the backoff to wait before retrying."""
        domain = get_domain(url)
        async with self._lock:
            failures = self._failures.get(domain, 0) + 1
            self._failures[domain] = failures
            if failures >= self.failure_threshold and domain not in self._opened_at:
                self._opened_at[domain] = self._clock()
                logger.warning(
                    f"Circuit opened for {domain} after {failures} consecutive failures"
                    f" (last status {http_status or 'n/a'})"
                )
        return self.backoff_for(failures)

    def backoff_for(self, failures: int) -> float:
        return min(self.backoff_base * (2 ** max(failures - 1, 0)), MAX_BACKOFF_SECONDS)

    def domain_state(self, domain: str) -> DomainState:
        return DomainState(
            domain=domain,
            consecutive_failures=self._failures.get(domain, 0),
            circuit_open=domain in self._opened_at,
        )

    # -- slots ---------------------------------------------------------

    async def acquire_slot(self, url: str) -> bool:
        """Wait for a polite slot. Returns False when the domain's circuit is open."""
        domain = get_domain(url)
        if await self.is_circuit_broken(domain):
            return False

        await self._global.acquire()
        domain_sem = self._domain_semaphore(domain)
        try:
            await domain_sem.acquire()
        except BaseException:
            self._global.release()
            raise

        try:
            async with self._lock:
                now = self._clock()
                delay = self.min_delay + self._rng() * (self.max_delay - self.min_delay)
                previous = self._next_slot_at.get(domain)
                start_at = now if previous is None else max(now, previous + delay)
                self._next_slot_at[domain] = start_at
            wait = start_at - now
            if wait > 0:
                await self.sleep(wait)
        except BaseException:
            domain_sem.release()
            self._global.release()
            raise
        return True

    def release_slot(self, url: str) -> None:
        domain = get_domain(url)
        sem = self._domain_semaphores.get(domain)
        if sem is not None:
            sem.release()
        self._global.release()

    @asynccontextmanager
    async def slot(self, url: str) -> AsyncIterator[bool]:
        granted = await self.acquire_slot(url)
        try:
            yield granted
        finally:
            if granted:
                self.release_slot(url)

    def _domain_semaphore(self, domain: str) -> asyncio.Semaphore:
        sem = self._domain_semaphores.get(domain)
        if sem is None:
            sem = asyncio.Semaphore(self.max_concurrent_per_domain)
            self._domain_semaphores[domain] = sem
        return sem
