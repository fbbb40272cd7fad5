"""Periodic refresh with supersession.

Every tick takes a generation number when it is issued. A tick commits its
result only if no newer tick was issued while it ran, so a slow, late
response can never overwrite fresher state. Scheduled ticks also cancel the
one still in flight instead of queueing behind it.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Generic, TypeVar

import structlog

from .errors import StoreUnavailable
from .timeouts import bounded

logger = structlog.get_logger()

T = TypeVar("T")


class LivePoller(Generic[T]):
    """Keeps the last committed result of ``refresh`` for one consumer."""

    def __init__(
        self,
        name: str,
        refresh: Callable[[], Awaitable[T]],
        interval_seconds: float,
        slow_tick_seconds: float = 2.0,
        first_refresh_timeout_seconds: float | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.name = name
        self._refresh = refresh
        self._interval = interval_seconds
        self._slow_tick_seconds = slow_tick_seconds
        self._first_refresh_timeout = first_refresh_timeout_seconds
        self._issued = 0
        self._committed = 0
        self._value: T | None = None
        self._committed_at: datetime | None = None
        self._inflight: asyncio.Task | None = None
        self._loop_task: asyncio.Task | None = None

    @property
    def value(self) -> T | None:
        return self._value

    @property
    def committed_generation(self) -> int:
        return self._committed

    @property
    def issued_generation(self) -> int:
        return self._issued

    @property
    def committed_at(self) -> datetime | None:
        return self._committed_at

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def tick(self) -> T | None:
        """Run one refresh. Returns the committed value, or None if dropped.

        A store outage keeps the last committed value in place.
        """
        self._issued += 1
        generation = self._issued
        started = time.perf_counter()

        try:
            result = await self._refresh()
        except StoreUnavailable as exc:
            logger.warning(
                "tick_skipped_store_unavailable",
                poller=self.name,
                generation=generation,
                error=str(exc),
            )
            return None
        except Exception:
            logger.exception("tick_failed", poller=self.name, generation=generation)
            return None

        duration = time.perf_counter() - started
        if duration > self._slow_tick_seconds:
            logger.warning(
                "slow_tick", poller=self.name, generation=generation, duration_s=round(duration, 3)
            )

        if generation != self._issued:
            logger.debug(
                "stale_tick_dropped",
                poller=self.name,
                generation=generation,
                latest_generation=self._issued,
            )
            return None

        self._commit(generation, result)
        return result

    def _commit(self, generation: int, result: T) -> None:
        self._value = result
        self._committed = generation
        self._committed_at = datetime.now(UTC)
        logger.debug("tick_committed", poller=self.name, generation=generation)

    def request_tick(self) -> asyncio.Task:
        """Start a tick in the background, superseding any tick still running."""
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
            logger.debug("tick_superseded", poller=self.name, generation=self._issued)
        self._inflight = asyncio.create_task(self.tick(), name=f"{self.name}-tick")
        return self._inflight

    async def current(self) -> T:
        """Last committed value.

        Before the first commit the refresh runs directly, bounded by
        ``first_refresh_timeout_seconds``, and its errors (StoreUnavailable,
        OperationTimeout) reach the caller. Its result is committed unless a
        newer tick was issued meanwhile.
        """
        if self._value is not None:
            return self._value

        self._issued += 1
        generation = self._issued
        result = await bounded(
            self._refresh(),
            f"{self.name}_refresh",
            self._first_refresh_timeout,
            poller=self.name,
        )
        if generation == self._issued:
            self._commit(generation, result)
        return result

    async def _run(self) -> None:
        while True:
            self.request_tick()
            await asyncio.sleep(self._interval)

    def start(self) -> asyncio.Task:
        if not self.running:
            self._loop_task = asyncio.create_task(self._run(), name=f"{self.name}-loop")
            logger.info("poller_started", poller=self.name, interval_s=self._interval)
        return self._loop_task

    async def stop(self) -> None:
        tasks = [t for t in (self._loop_task, self._inflight) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._inflight = None
        logger.info("poller_stopped", poller=self.name)
