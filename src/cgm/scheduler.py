"""Glucose fetch scheduler.

Drives reconciliation cycles from three triggers:

    timer    — a single repeating timer (default every 60 seconds)
    refresh  — "refresh now", fired once at startup and by external signals
               such as the pump's periodic wake-up
    push     — readings pushed directly by a hardware source driver

Triggers are queued and executed one at a time by a single worker task, so
cursor reads and store writes never race.  A slow cycle never stops the timer
from queueing the next tick.  Each cycle re-resolves the active source from
the current configuration, then fetches the source and the health-record
store concurrently and waits for both before reconciling.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Sequence

from src.cgm.base import FetchTrigger, GlucoseReading
from src.cgm.collaborators import HealthStore
from src.cgm.reconciler import Reconciler, ReconcileResult
from src.cgm.resolver import SourceResolver
from src.cgm.store import ReadingStore

logger = logging.getLogger("glucolink.cgm.scheduler")

DEFAULT_INTERVAL_SECONDS = 60.0


@dataclass
class CycleRequest:
    """A queued reconciliation cycle.

    Attributes:
        trigger:  What caused the cycle.
        readings: Pushed readings (push cycles only).
    """

    trigger: FetchTrigger
    readings: list[GlucoseReading] = field(default_factory=list)


class FetchScheduler:
    """Own the timer, the trigger queue and the single reconciliation worker.

    Usage::

        scheduler = FetchScheduler(resolver, reconciler, store, health)
        await scheduler.start()
        scheduler.refresh_now()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        resolver: SourceResolver,
        reconciler: Reconciler,
        store: ReadingStore,
        health: HealthStore,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self._resolver = resolver
        self._reconciler = reconciler
        self._store = store
        self._health = health
        self._interval = interval_seconds
        self._queue: asyncio.Queue[CycleRequest] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer_task: asyncio.Task | None = None
        self._worker_task: asyncio.Task | None = None
        self.last_result: ReconcileResult | None = None
        self._resolver.set_push_handler(self.update_glucose_store)

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the worker and the timer, and fire one immediate cycle."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._worker_task = asyncio.create_task(self._worker(), name="cgm-worker")
        self._timer_task = asyncio.create_task(self._timer(), name="cgm-timer")
        logger.info("FetchScheduler started (interval=%.0fs)", self._interval)
        self._enqueue(CycleRequest(FetchTrigger("startup")))

    async def stop(self) -> None:
        """Cancel the timer and the worker.  Queued cycles are dropped."""
        tasks = [t for t in (self._timer_task, self._worker_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timer_task = None
        self._worker_task = None
        logger.info("FetchScheduler stopped")

    async def drain(self) -> None:
        """Wait until every queued cycle has completed."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def refresh_now(self) -> None:
        """Queue an immediate cycle (does not reset the timer phase)."""
        logger.debug("refreshCGM requested")
        self._enqueue(CycleRequest(FetchTrigger("refresh")))

    def update_glucose_store(self, readings: Sequence[GlucoseReading]) -> None:
        """Queue a cycle for readings pushed by a hardware source.

        Safe to call from a driver thread.
        """
        self._enqueue(CycleRequest(FetchTrigger("push"), list(readings)))

    def _enqueue(self, request: CycleRequest) -> None:
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        loop = self._loop
        if loop is not None and current is not loop and not loop.is_closed():
            loop.call_soon_threadsafe(self._queue.put_nowait, request)
        else:
            self._queue.put_nowait(request)

    def source_info(self) -> dict[str, Any]:
        return self._resolver.source_info()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, request: CycleRequest) -> ReconcileResult:
        """Fetch, join and reconcile one cycle."""
        trigger = request.trigger
        source = self._resolver.resolve()
        logger.debug("Cycle %s on source %s", trigger.reason, source.SOURCE_ID)

        if trigger.reason == "push":
            primary, secondary = request.readings, []
        else:
            readings = (
                source.fetch_if_needed()
                if trigger.reason == "refresh"
                else source.fetch(trigger)
            )
            primary, secondary = await asyncio.gather(
                self._collect(readings, source.SOURCE_ID),
                self._fetch_health(),
            )

        cursor = self._store.sync_cursor()
        logger.debug("Cycle %s: sync cursor is %s", trigger.reason, cursor.isoformat())
        result = await self._reconciler.reconcile(primary, secondary, cursor)
        self.last_result = result
        return result

    @staticmethod
    async def _collect(
        readings: AsyncIterator[GlucoseReading], source_id: str
    ) -> list[GlucoseReading]:
        collected: list[GlucoseReading] = []
        try:
            async for reading in readings:
                collected.append(reading)
        except Exception as exc:
            logger.warning(
                "Glucose fetch from %s failed after %d readings: %s",
                source_id,
                len(collected),
                exc,
            )
        return collected

    async def _fetch_health(self) -> list[GlucoseReading]:
        try:
            return list(await self._health.fetch_recent(None))
        except Exception as exc:
            logger.warning("Health store fetch failed: %s", exc)
            return []

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _timer(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            logger.debug("FetchScheduler timer heartbeat")
            self._enqueue(CycleRequest(FetchTrigger("timer")))

    async def _worker(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self.run_cycle(request)
            except Exception:
                logger.exception("Glucose cycle %s failed", request.trigger.reason)
            finally:
                self._queue.task_done()
