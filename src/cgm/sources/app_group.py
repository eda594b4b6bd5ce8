"""Shared-storage sources (xDrip, GlucoseDirect).

A companion CGM app writes its latest readings as JSON into a directory
shared with Glucolink.  The file holds a list of entries shaped like::

    [{"Value": 123, "DT": "/Date(1700000000000)/", "direction": "Flat"}, ...]

``DT`` is a .NET style epoch-milliseconds date; ``date`` (epoch ms) and
``dateString`` (ISO-8601) are accepted as fallbacks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

from src.cgm.base import FetchTrigger, GlucoseReading, GlucoseSource

logger = logging.getLogger("glucolink.cgm.sources.app_group")

_DOTNET_DATE = re.compile(r"/Date\((-?\d+)(?:[+-]\d+)?\)/")


class AppGroupSource(GlucoseSource):
    """Reads ``<shared_dir>/<app_name>/latestReadings.json``."""

    READINGS_FILE = "latestReadings.json"

    def __init__(self, app_name: str, source_id: str, shared_dir: Path) -> None:
        """Initialize the source.

        Args:
            app_name:   Companion app folder name ('xDrip', 'GlucoseDirect').
            source_id:  CGM slug stamped on every reading.
            shared_dir: Root of the shared storage area.
        """
        self.app_name = app_name
        self.SOURCE_ID = source_id
        self.DISPLAY_NAME = app_name
        self._path = shared_dir / app_name / self.READINGS_FILE

    @property
    def path(self) -> Path:
        return self._path

    async def fetch(self, trigger: FetchTrigger | None) -> AsyncIterator[GlucoseReading]:
        for reading in await asyncio.to_thread(self._read):
            yield reading

    def _read(self) -> list[GlucoseReading]:
        if not self._path.exists():
            logger.debug("%s: no shared readings at %s", self.app_name, self._path)
            return []
        try:
            entries = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("%s: could not read %s: %s", self.app_name, self._path, exc)
            return []
        if not isinstance(entries, list):
            logger.warning("%s: expected a list in %s", self.app_name, self._path)
            return []

        readings: list[GlucoseReading] = []
        for entry in entries:
            reading = self._parse_entry(entry)
            if reading is not None:
                readings.append(reading)
        return readings

    def _parse_entry(self, entry: Any) -> GlucoseReading | None:
        if not isinstance(entry, dict):
            return None
        value = self._safe_float(entry.get("Value", entry.get("sgv")))
        timestamp = self._entry_time(entry)
        if value is None or timestamp is None or value <= 0:
            return None
        return GlucoseReading(
            timestamp=timestamp,
            value=value,
            source=self.SOURCE_ID,
            device=self.app_name,
            direction=entry.get("direction") or entry.get("Trend"),
        )

    def _entry_time(self, entry: dict) -> datetime | None:
        dt = entry.get("DT")
        if isinstance(dt, str):
            match = _DOTNET_DATE.search(dt)
            if match:
                return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
        millis = self._safe_float(entry.get("date"))
        if millis is not None:
            return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        return self._parse_iso_datetime(entry.get("dateString"))

    def source_info(self) -> dict[str, Any]:
        return {"type": self.SOURCE_ID, "app": self.app_name, "path": str(self._path)}
