"""Shared fixtures and fake collaborators for CGM pipeline tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

import pytest

from src.cgm.base import FetchTrigger, GlucoseReading, GlucoseSource
from src.cgm.collaborators import (
    CloudMirror,
    HealthStore,
    Heartbeat,
    LoggingKeepAlive,
)
from src.cgm.config_loader import CGMConfig, CGMConfigChannel, _validate_and_build
from src.cgm.reconciler import Reconciler
from src.cgm.store import SQLiteReadingStore

# Canonical test epoch
T0 = datetime(2026, 2, 23, 8, 0, 0, tzinfo=timezone.utc)


def make_config(
    cgm: str = "dexcom_g6",
    transmitter_id: str | None = "8G1234",
    smoothing: bool = False,
    interval: str = "5min",
) -> CGMConfig:
    """Build a validated config without touching disk."""
    return _validate_and_build(
        {
            "version": "test",
            "source": {"cgm": cgm, "transmitter_id": transmitter_id},
            "smoothing": {"enabled": smoothing, "interval": interval},
        }
    )


def make_reading(
    minutes: float,
    value: float = 100.0,
    source: str = "dexcom_g6",
    id: str = "",
) -> GlucoseReading:
    """A reading ``minutes`` after T0."""
    return GlucoseReading(
        timestamp=T0 + timedelta(minutes=minutes),
        value=value,
        source=source,
        id=id,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingHeartbeat(Heartbeat):
    def __init__(self, calls: list[str]) -> None:
        self.calls = calls
        self.beats: list[datetime] = []

    def heartbeat(self, at: datetime) -> None:
        self.calls.append("heartbeat")
        self.beats.append(at)


class RecordingCloudMirror(CloudMirror):
    def __init__(self, calls: list[str]) -> None:
        self.calls = calls
        self.uploads = 0
        self.manual_deletes: list[datetime] = []

    async def upload_glucose(self) -> None:
        self.calls.append("upload")
        self.uploads += 1

    async def delete_manual_glucose(self, at: datetime) -> None:
        self.manual_deletes.append(at)


class FakeHealthStore(HealthStore):
    def __init__(self, calls: list[str], readings: Sequence[GlucoseReading] = ()) -> None:
        self.calls = calls
        self.readings = list(readings)
        self.saved: list[GlucoseReading] = []
        self.deleted: list[str] = []
        self.fail_fetch = False

    async def fetch_recent(self, since: datetime | None = None) -> list[GlucoseReading]:
        if self.fail_fetch:
            raise RuntimeError("health store unavailable")
        return list(self.readings)

    async def save_if_needed(self, readings: Sequence[GlucoseReading]) -> None:
        self.calls.append("health")
        self.saved.extend(readings)

    async def delete_glucose(self, sync_id: str) -> None:
        self.calls.append("health-delete")
        self.deleted.append(sync_id)


class StaticSource(GlucoseSource):
    """Source returning a fixed batch; optionally fails part-way."""

    SOURCE_ID = "static"
    DISPLAY_NAME = "Static"

    def __init__(self, readings: Sequence[GlucoseReading] = (), fail_after: int | None = None) -> None:
        self.readings = list(readings)
        self.fail_after = fail_after
        self.fetch_triggers: list[FetchTrigger | None] = []
        self.fetch_if_needed_calls = 0

    async def fetch(self, trigger: FetchTrigger | None) -> AsyncIterator[GlucoseReading]:
        self.fetch_triggers.append(trigger)
        for i, reading in enumerate(self.readings):
            if self.fail_after is not None and i >= self.fail_after:
                raise ConnectionError("transmitter lost")
            yield reading

    async def fetch_if_needed(self) -> AsyncIterator[GlucoseReading]:
        self.fetch_if_needed_calls += 1
        for reading in self.readings:
            yield reading

    def source_info(self) -> dict[str, Any]:
        return {"type": self.SOURCE_ID}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0 + timedelta(hours=1))


@pytest.fixture
def channel() -> CGMConfigChannel:
    return CGMConfigChannel(make_config())


@pytest.fixture
def store(tmp_path: Path, channel: CGMConfigChannel, clock: FakeClock) -> SQLiteReadingStore:
    return SQLiteReadingStore(
        tmp_path / "glucose.sqlite3",
        min_interval=lambda: channel.current.min_interval,
        clock=clock,
    )


@pytest.fixture
def calls() -> list[str]:
    """Shared call log recording fan-out order."""
    return []


@pytest.fixture
def heartbeat(calls: list[str]) -> RecordingHeartbeat:
    return RecordingHeartbeat(calls)


@pytest.fixture
def cloud(calls: list[str]) -> RecordingCloudMirror:
    return RecordingCloudMirror(calls)


@pytest.fixture
def health(calls: list[str]) -> FakeHealthStore:
    return FakeHealthStore(calls)


@pytest.fixture
def keep_alive() -> LoggingKeepAlive:
    return LoggingKeepAlive()


@pytest.fixture
def reconciler(
    store: SQLiteReadingStore,
    channel: CGMConfigChannel,
    heartbeat: RecordingHeartbeat,
    cloud: RecordingCloudMirror,
    health: FakeHealthStore,
    keep_alive: LoggingKeepAlive,
    clock: FakeClock,
) -> Reconciler:
    return Reconciler(store, channel, heartbeat, cloud, health, keep_alive, clock=clock)
