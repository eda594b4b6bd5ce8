"""Deterministic glucose simulator for development and tests.

Readings fall on fixed slots aligned to the Unix epoch.  The value at a slot
is a sine wave plus seeded noise, so it depends only on the seed and the
timestamp: two simulators with the same seed always agree, and re-fetching
never changes history.
"""

from __future__ import annotations

import logging
import math
import random
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

from src.cgm.base import FetchTrigger, GlucoseReading, GlucoseSource, utc_now
from src.cgm.config_loader import SimulatorConfig

logger = logging.getLogger("glucolink.cgm.sources.simulator")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MIN_MG_DL = 40
_MAX_MG_DL = 400


class GlucoseSimulatorSource(GlucoseSource):
    """Synthetic but reproducible CGM."""

    SOURCE_ID = "simulator"
    DISPLAY_NAME = "Glucose Simulator"

    def __init__(
        self,
        config: SimulatorConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or SimulatorConfig()
        self._clock = clock
        self._interval = timedelta(minutes=self._config.interval_minutes)
        self._last_slot: datetime | None = None

    def value_at(self, timestamp: datetime) -> int:
        """Simulated glucose (mg/dL) for a slot timestamp."""
        cfg = self._config
        minutes = (timestamp - _EPOCH).total_seconds() / 60.0
        wave = cfg.amplitude_mg_dl * math.sin(2 * math.pi * minutes / cfg.period_minutes)
        noise = random.Random(f"{cfg.seed}:{int(minutes)}").gauss(0.0, cfg.noise_mg_dl)
        value = round(cfg.base_mg_dl + wave + noise)
        return max(_MIN_MG_DL, min(_MAX_MG_DL, value))

    def _slot_floor(self, moment: datetime) -> datetime:
        elapsed = moment - _EPOCH
        return _EPOCH + (elapsed // self._interval) * self._interval

    def _due_slots(self) -> list[datetime]:
        latest = self._slot_floor(self._clock())
        if self._last_slot is None:
            return [latest]
        slots: list[datetime] = []
        slot = self._last_slot + self._interval
        while slot <= latest:
            slots.append(slot)
            slot += self._interval
        return slots

    def _reading(self, slot: datetime) -> GlucoseReading:
        previous = self.value_at(slot - self._interval)
        value = self.value_at(slot)
        return GlucoseReading(
            timestamp=slot,
            value=value,
            source=self.SOURCE_ID,
            device=self.DISPLAY_NAME,
            direction=_direction(value - previous, self._config.interval_minutes),
        )

    async def fetch(self, trigger: FetchTrigger | None) -> AsyncIterator[GlucoseReading]:
        slots = self._due_slots()
        if slots:
            self._last_slot = slots[-1]
            logger.debug("Simulator produced %d readings", len(slots))
        for slot in slots:
            yield self._reading(slot)

    def source_info(self) -> dict[str, Any]:
        return {
            "type": self.SOURCE_ID,
            "seed": self._config.seed,
            "intervalMinutes": self._config.interval_minutes,
            "lastReading": self._last_slot.isoformat() if self._last_slot else None,
        }


def _direction(delta: float, interval_minutes: int) -> str:
    """Nightscout trend arrow for a delta over one interval."""
    per_minute = delta / interval_minutes
    if per_minute > 3:
        return "DoubleUp"
    if per_minute > 2:
        return "SingleUp"
    if per_minute > 1:
        return "FortyFiveUp"
    if per_minute >= -1:
        return "Flat"
    if per_minute >= -2:
        return "FortyFiveDown"
    if per_minute >= -3:
        return "SingleDown"
    return "DoubleDown"
