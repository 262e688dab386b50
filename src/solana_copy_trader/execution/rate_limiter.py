"""Shared concurrency ceiling with minimum spacing between dispatches."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from ..config.settings import ExecutionConfig
from ..errors import LimiterClosedError
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

T = TypeVar("T")


class RateLimiter:
    """Admit at most ``max_concurrency`` jobs, starting them no closer together
    than ``min_interval`` seconds, in arrival order.

    After :meth:`close` new submissions raise :class:`LimiterClosedError`
    while already admitted jobs run to completion.
    """

    def __init__(
        self,
        max_concurrency: int = 3,
        min_interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max_concurrency = max_concurrency
        self._min_interval = max(min_interval, 0.0)
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._spacing = asyncio.Lock()
        self._last_start: Optional[float] = None
        self._pending = 0
        self._running = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._logger = get_logger(__name__)

    @classmethod
    def from_config(cls, config: ExecutionConfig) -> "RateLimiter":
        return cls(config.rate_limiter_concurrency, config.rate_limiter_min_interval_seconds)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def running(self) -> int:
        return self._running

    async def submit(self, job: Callable[[], Awaitable[T]]) -> T:
        if self._closed:
            raise LimiterClosedError("rate limiter is closed")
        self._pending += 1
        self._idle.clear()
        METRICS.gauge("limiter.pending", self._pending)
        try:
            async with self._semaphore:
                await self._wait_for_slot()
                self._running += 1
                METRICS.gauge("limiter.running", self._running)
                try:
                    return await job()
                finally:
                    self._running -= 1
                    METRICS.gauge("limiter.running", self._running)
        finally:
            self._pending -= 1
            METRICS.gauge("limiter.pending", self._pending)
            if self._pending == 0:
                self._idle.set()

    async def _wait_for_slot(self) -> None:
        async with self._spacing:
            if self._last_start is not None:
                delay = self._last_start + self._min_interval - self._clock()
                if delay > 0:
                    await self._sleep(delay)
            self._last_start = self._clock()

    async def drain(self) -> None:
        await self._idle.wait()

    async def close(self) -> None:
        """Stop admitting work and wait for admitted jobs to finish."""

        self._closed = True
        if self._pending:
            self._logger.info("Draining %d limiter job(s)", self._pending)
        await self.drain()


__all__ = ["RateLimiter"]
