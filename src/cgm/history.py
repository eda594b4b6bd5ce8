"""Glucose history view and deletions.

Deletion order is a fixed policy: the local store is updated first, then the
health-record store.  Manual BG checks live only in the cloud mirror and are
deleted there by date.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from src.cgm.base import GlucoseReading
from src.cgm.collaborators import CloudMirror, HealthStore
from src.cgm.store import ReadingStore

logger = logging.getLogger("glucolink.cgm.history")

_DISTANT_PAST = datetime(1970, 1, 1, tzinfo=timezone.utc)


class GlucoseHistory:
    """Read and delete operations on the reconciled timeline."""

    def __init__(self, store: ReadingStore, health: HealthStore, cloud: CloudMirror) -> None:
        self._store = store
        self._health = health
        self._cloud = cloud

    def glucose(self) -> list[GlucoseReading]:
        """Stored readings, newest first."""
        return sorted(self._store.recent(), key=lambda r: r.timestamp, reverse=True)

    async def delete_glucose(self, reading_id: str) -> bool:
        """Delete a reading locally, then from the health-record store.

        Returns:
            True if the reading existed in the local store.
        """
        removed = self._store.remove_glucose([reading_id])
        await self._health.delete_glucose(reading_id)
        logger.info("Deleted glucose %s (local=%s)", reading_id, bool(removed))
        return bool(removed)

    async def delete_manual_glucose(self, at: datetime | None) -> None:
        """Delete a manual BG check from the cloud mirror."""
        await self._cloud.delete_manual_glucose(at or _DISTANT_PAST)
