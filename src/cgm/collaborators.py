"""Narrow interfaces to the collaborators the pipeline fans out to.

The reconciler only needs a handful of calls on each collaborator:

    HealthStore  — fetch_recent(), save_if_needed(), delete_glucose()
    CloudMirror  — upload_glucose(), delete_manual_glucose()
    Heartbeat    — heartbeat(at)
    KeepAlive    — begin()/end() of a background-execution token

Default implementations here are used when a collaborator is not configured.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Sequence

from src.cgm.base import GlucoseReading

logger = logging.getLogger("glucolink.cgm.collaborators")


class HealthStore(ABC):
    """Secondary health-record store (read and write-back)."""

    @abstractmethod
    async def fetch_recent(self, since: datetime | None = None) -> list[GlucoseReading]:
        """Return recent readings held by the store."""

    @abstractmethod
    async def save_if_needed(self, readings: Sequence[GlucoseReading]) -> None:
        """Write readings the store does not have yet."""

    @abstractmethod
    async def delete_glucose(self, sync_id: str) -> None:
        """Delete one reading by its sync id."""


class CloudMirror(ABC):
    """Best-effort remote copy of the glucose timeline."""

    @abstractmethod
    async def upload_glucose(self) -> None:
        """Upload the current recent window.  Must not raise."""

    @abstractmethod
    async def delete_manual_glucose(self, at: datetime) -> None:
        """Delete a manually entered reading at the given time."""


class Heartbeat(ABC):
    """Device heartbeat signalled after every successful store."""

    @abstractmethod
    def heartbeat(self, at: datetime) -> None:
        """Signal that fresh glucose was stored at ``at``."""


class KeepAlive(ABC):
    """Host facility that keeps the process running while work is in flight."""

    @abstractmethod
    def begin(self, name: str) -> int:
        """Acquire a token.  Returns its identifier."""

    @abstractmethod
    def end(self, token: int) -> None:
        """Release a token acquired with ``begin``."""


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


class DisabledHealthStore(HealthStore):
    """Health store used when no health-record integration is enabled."""

    async def fetch_recent(self, since: datetime | None = None) -> list[GlucoseReading]:
        return []

    async def save_if_needed(self, readings: Sequence[GlucoseReading]) -> None:
        return None

    async def delete_glucose(self, sync_id: str) -> None:
        return None


class DisabledCloudMirror(CloudMirror):
    async def upload_glucose(self) -> None:
        return None

    async def delete_manual_glucose(self, at: datetime) -> None:
        return None


class DeviceHeartbeat(Heartbeat):
    """Records the last heartbeat and forwards it to registered listeners.

    The dosing loop subscribes here to wake up when new glucose is stored.
    """

    def __init__(self) -> None:
        self.last_heartbeat: datetime | None = None
        self._listeners: list[Callable[[datetime], None]] = []

    def subscribe(self, listener: Callable[[datetime], None]) -> None:
        self._listeners.append(listener)

    def heartbeat(self, at: datetime) -> None:
        self.last_heartbeat = at
        logger.debug("Device heartbeat at %s", at.isoformat())
        for listener in self._listeners:
            listener(at)


class LoggingKeepAlive(KeepAlive):
    """Keep-alive that only tracks outstanding tokens.

    A server process is never suspended, so there is nothing to extend; the
    bookkeeping still lets tests verify balanced begin/end calls.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.active: set[int] = set()

    def begin(self, name: str) -> int:
        token = next(self._ids)
        self.active.add(token)
        logger.debug("Background task %d started: %s", token, name)
        return token

    def end(self, token: int) -> None:
        if token not in self.active:
            raise RuntimeError(f"Background task {token} already ended")
        self.active.discard(token)
        logger.debug("Background task %d ended", token)
