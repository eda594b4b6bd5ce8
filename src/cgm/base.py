"""Base classes and canonical data models for the Glucolink CGM pipeline.

Every glucose source must subclass GlucoseSource and yield canonical
GlucoseReading objects.  These types are the single source of truth consumed
by the reconciler, the reading store, and the API layer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

logger = logging.getLogger("glucolink.cgm")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GlucoseReading:
    """One glucose measurement, timestamped by the source clock.

    Attributes:
        timestamp: Authoritative UTC timestamp from the source.
        value:     Glucose concentration in mg/dL.
        source:    Source slug that produced the reading ('dexcom_g6', ...).
        id:        Stable identity used for dedup and deletion.  Derived from
                   source + timestamp when not assigned by the producer.
        device:    Optional device / transmitter description.
        direction: Optional trend arrow ('Flat', 'SingleUp', ...).
    """

    timestamp: datetime
    value: float
    source: str
    id: str = ""
    device: str | None = None
    direction: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))
        object.__setattr__(self, "value", float(self.value))
        if not self.id:
            object.__setattr__(
                self, "id", f"{self.source}:{self.timestamp.isoformat()}"
            )


@dataclass(frozen=True)
class FetchTrigger:
    """Why a fetch was requested.

    Attributes:
        reason:   'startup', 'timer', 'refresh' or 'push'.
        fired_at: UTC time the trigger fired.
    """

    reason: str
    fired_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Abstract source
# ---------------------------------------------------------------------------


class GlucoseSource(ABC):
    """Abstract base class for every CGM data provider.

    Subclasses must implement:
        - fetch()
        - source_info()

    ``fetch`` returns a fresh async iterator on every call, so a consumer can
    always restart the sequence by calling it again.  A source that cannot
    produce data yields nothing; it never raises into the pipeline.

    Optional overrides:
        - fetch_if_needed()  (defaults to fetch() with a 'refresh' trigger)
        - release()          (hardware sources free their transport here)
    """

    #: Unique slug matching the CGM configuration value.
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging and diagnostics.
    DISPLAY_NAME: str = "Unknown CGM"

    @abstractmethod
    def fetch(self, trigger: FetchTrigger | None) -> AsyncIterator[GlucoseReading]:
        """Yield readings available for this cycle.

        Args:
            trigger: What caused the fetch (None when pushed by a device).

        Yields:
            GlucoseReading in any order.
        """

    def fetch_if_needed(self) -> AsyncIterator[GlucoseReading]:
        """Yield readings only when the source considers new data likely."""
        return self.fetch(FetchTrigger("refresh"))

    @abstractmethod
    def source_info(self) -> dict[str, Any]:
        """Return diagnostic key/value pairs for this source."""

    def release(self) -> None:
        """Free any resources held by the source.  Default is a no-op."""
        return None

    # ------------------------------------------------------------------
    # Shared helpers — available to all sources
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed UTC.  Returns None if the value is None or
        unparseable.
        """
        if not value:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
