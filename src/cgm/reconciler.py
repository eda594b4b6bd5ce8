"""Glucose reconciliation: merge, filter, smooth, persist, fan out.

One reconciliation cycle takes the primary source batch, the health-record
store batch and the current sync cursor, and turns them into a persisted
delta:

1. Concatenate primary + secondary (order preserved, primary first).
2. Keep readings strictly newer than the cursor and inside the store's
   retention window.
3. Drop readings closer than the minimum sampling interval to the previous
   kept reading (earliest-seen wins).
4. Nothing left → no-op.
5. Optionally re-smooth the last 31 minutes of stored history together with
   the new readings, then keep only the smoothed readings newer than the
   cursor.
6. Persist (this advances the cursor).
7. Fan out, in this order: device heartbeat, cloud mirror upload of the
   recent window, health-record write-back of the readings at times the
   health-record store does not already cover.

A keep-alive token is held for the whole cycle and released on every exit.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, Sequence

from src.cgm.base import GlucoseReading, utc_now
from src.cgm.collaborators import CloudMirror, HealthStore, Heartbeat, KeepAlive
from src.cgm.config_loader import CGMConfigChannel
from src.cgm.smoothing import smooth_glucose
from src.cgm.store import ReadingStore, ReadingStoreError

logger = logging.getLogger("glucolink.cgm.reconciler")

# Neighbours further apart than this many nominal intervals are a gap.
_GAP_INTERVALS = 3


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation cycle.

    Attributes:
        status:         'stored', 'empty' or 'failed'.
        candidates:     Number of readings offered by both streams.
        delta:          Readings persisted this cycle.
        cursor_before:  Sync cursor at the start of the cycle.
        cursor_after:   Sync cursor after persisting (unchanged unless stored).
        smoothed:       True if the smoothing filter ran.
        health_written: Readings offered to the health-record write-back.
        error:          Error message if status == 'failed'.
        reconciled_at:  UTC timestamp of completion.
    """

    status: str
    candidates: int = 0
    delta: list[GlucoseReading] = field(default_factory=list)
    cursor_before: datetime | None = None
    cursor_after: datetime | None = None
    smoothed: bool = False
    health_written: int = 0
    error: str | None = None
    reconciled_at: datetime = field(default_factory=utc_now)


class Reconciler:
    """Turns candidate batches into a persisted, fanned-out delta.

    Usage::

        reconciler = Reconciler(store, channel, heartbeat, mirror, health, keep_alive)
        result = await reconciler.reconcile(primary, secondary, store.sync_cursor())
    """

    def __init__(
        self,
        store: ReadingStore,
        channel: CGMConfigChannel,
        heartbeat: Heartbeat,
        cloud: CloudMirror,
        health: HealthStore,
        keep_alive: KeepAlive,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._channel = channel
        self._heartbeat = heartbeat
        self._cloud = cloud
        self._health = health
        self._keep_alive = keep_alive
        self._clock = clock
        self._lock = asyncio.Lock()

    @contextmanager
    def _background_task(self, name: str) -> Iterator[int]:
        token = self._keep_alive.begin(name)
        try:
            yield token
        finally:
            self._keep_alive.end(token)

    async def reconcile(
        self,
        primary: Sequence[GlucoseReading],
        secondary: Sequence[GlucoseReading],
        cursor: datetime,
    ) -> ReconcileResult:
        """Run one reconciliation cycle.

        Args:
            primary:   Readings from the active glucose source.
            secondary: Readings from the health-record store.
            cursor:    Sync cursor read at the start of the cycle.

        Returns:
            ReconcileResult describing what was stored.
        """
        async with self._lock:
            with self._background_task("save BG starting"):
                return await self._reconcile(primary, secondary, cursor)

    async def _reconcile(
        self,
        primary: Sequence[GlucoseReading],
        secondary: Sequence[GlucoseReading],
        cursor: datetime,
    ) -> ReconcileResult:
        candidates = [*primary, *secondary]
        result = ReconcileResult(
            status="empty",
            candidates=len(candidates),
            cursor_before=cursor,
            cursor_after=cursor,
        )
        if not candidates:
            return result

        cutoff = self._store.retention_cutoff()
        by_date = [
            r
            for r in candidates
            if r.timestamp > cursor and (cutoff is None or r.timestamp >= cutoff)
        ]
        delta = self._store.filter_too_frequent_glucose(by_date, cursor)
        if not delta:
            logger.debug(
                "No new glucose: %d candidates, %d after cursor %s",
                len(candidates),
                len(by_date),
                cursor.isoformat(),
            )
            return result
        logger.info("New glucose found: %d readings", len(delta))

        try:
            delta, result.smoothed = self._maybe_smooth(delta, cursor)
            self._store.store_glucose(delta)
        except ReadingStoreError as exc:
            logger.error("Could not persist %d glucose readings: %s", len(delta), exc)
            result.status = "failed"
            result.error = str(exc)
            return result

        result.status = "stored"
        result.delta = delta
        result.cursor_after = max(r.timestamp for r in delta)

        await self._fan_out(delta, secondary, result)
        return result

    def _maybe_smooth(
        self, delta: list[GlucoseReading], cursor: datetime
    ) -> tuple[list[GlucoseReading], bool]:
        config = self._channel.current
        smoothing = config.smoothing
        if not smoothing.enabled:
            return delta, False

        now = self._clock()
        lookback = config.filter.lookback
        history = [r for r in self._store.recent() if r.timestamp + lookback > now]
        logger.debug(
            "Smoothing on %s glucose with frame size %d (%d passes, %d history)",
            smoothing.interval.value,
            smoothing.frame_size,
            smoothing.passes,
            len(history),
        )
        smoothed = smooth_glucose(
            history + delta,
            smoothing.frame_size,
            smoothing.passes,
            max_gap=smoothing.nominal_interval * _GAP_INTERVALS,
        )
        return [r for r in smoothed if r.timestamp > cursor], True

    async def _fan_out(
        self,
        delta: list[GlucoseReading],
        secondary: Sequence[GlucoseReading],
        result: ReconcileResult,
    ) -> None:
        try:
            self._heartbeat.heartbeat(self._clock())
        except Exception as exc:
            logger.warning("Device heartbeat failed: %s", exc)

        try:
            await self._cloud.upload_glucose()
        except Exception as exc:
            logger.warning("Cloud mirror upload failed: %s", exc)

        # The health store already holds every sample at these times.
        from_health = {r.timestamp for r in secondary}
        for_health = [r for r in delta if r.timestamp not in from_health]
        if not for_health:
            return
        try:
            await self._health.save_if_needed(for_health)
            result.health_written = len(for_health)
        except Exception as exc:
            logger.warning(
                "Health store write-back of %d readings failed: %s", len(for_health), exc
            )
