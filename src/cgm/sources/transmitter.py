"""Hardware transmitter sources (Dexcom G5/G6/G7, Libre transmitter).

The radio transport is owned by a separate driver.  It hands decoded readings
to ``receive()``; the source either pushes them straight into the pipeline
(when a push handler is attached) or buffers them until the next ``fetch``.

Each source is bound to one transmitter id for its whole life.  When the user
configures a different transmitter, the resolver builds a fresh instance and
releases the old one.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Sequence

from src.cgm.base import FetchTrigger, GlucoseReading, GlucoseSource

logger = logging.getLogger("glucolink.cgm.sources.transmitter")

PushHandler = Callable[[list[GlucoseReading]], None]


class BufferedSource(GlucoseSource):
    """Source fed by an external driver through ``receive()``."""

    #: Upper bound on buffered readings (a day of 1-minute data).
    MAX_BUFFER = 1440

    def __init__(self, on_push: PushHandler | None = None) -> None:
        self._buffer: deque[GlucoseReading] = deque(maxlen=self.MAX_BUFFER)
        self._lock = threading.Lock()
        self._on_push = on_push
        self._released = False
        self.last_received_at: datetime | None = None

    @property
    def released(self) -> bool:
        return self._released

    def attach(self, on_push: PushHandler | None) -> None:
        """Set or clear the push handler."""
        self._on_push = on_push

    def receive(self, readings: Sequence[GlucoseReading]) -> None:
        """Accept readings decoded by the driver."""
        if self._released:
            logger.warning(
                "%s: dropping %d readings received after release",
                self.SOURCE_ID,
                len(readings),
            )
            return
        if not readings:
            return
        self.last_received_at = max(r.timestamp for r in readings)
        if self._on_push is not None:
            self._on_push(list(readings))
            return
        with self._lock:
            self._buffer.extend(readings)

    def _drain(self) -> list[GlucoseReading]:
        with self._lock:
            readings = list(self._buffer)
            self._buffer.clear()
        return readings

    async def fetch(self, trigger: FetchTrigger | None) -> AsyncIterator[GlucoseReading]:
        for reading in self._drain():
            yield reading

    def release(self) -> None:
        self._released = True
        self._on_push = None
        with self._lock:
            self._buffer.clear()

    def source_info(self) -> dict[str, Any]:
        return {
            "type": self.SOURCE_ID,
            "name": self.DISPLAY_NAME,
            "buffered": len(self._buffer),
            "lastReading": (
                self.last_received_at.isoformat() if self.last_received_at else None
            ),
        }


class TransmitterSource(BufferedSource):
    """A buffered source bound to one hardware transmitter."""

    def __init__(self, transmitter_id: str | None, on_push: PushHandler | None = None) -> None:
        super().__init__(on_push=on_push)
        self.transmitter_id = transmitter_id

    def release(self) -> None:
        logger.info("%s: releasing transmitter %s", self.SOURCE_ID, self.transmitter_id)
        super().release()

    def source_info(self) -> dict[str, Any]:
        info = super().source_info()
        info["transmitterID"] = self.transmitter_id
        return info


class DexcomG5Source(TransmitterSource):
    SOURCE_ID = "dexcom_g5"
    DISPLAY_NAME = "Dexcom G5"


class DexcomG6Source(TransmitterSource):
    SOURCE_ID = "dexcom_g6"
    DISPLAY_NAME = "Dexcom G6"


class DexcomG7Source(TransmitterSource):
    SOURCE_ID = "dexcom_g7"
    DISPLAY_NAME = "Dexcom G7"


class LibreTransmitterSource(TransmitterSource):
    SOURCE_ID = "libre_transmitter"
    DISPLAY_NAME = "Libre Transmitter"
