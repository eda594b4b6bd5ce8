"""Resolve the active glucose source from the current configuration.

The resolver is the only holder of the active source.  It is consulted at the
start of every cycle; when the configuration selects a different source (or a
different transmitter for the same hardware type) it builds a fresh instance
and releases the previous hardware source.
"""

from __future__ import annotations

import logging
from typing import Any

from src.cgm.base import GlucoseSource
from src.cgm.config_loader import CGMConfigChannel
from src.cgm.sources import (
    SourceDependencies,
    SourceFactory,
    TransmitterSource,
    build_source,
    source_key,
)
from src.cgm.sources.transmitter import BufferedSource, PushHandler

logger = logging.getLogger("glucolink.cgm.resolver")


class SourceResolver:
    """Maps the configuration channel to a single active GlucoseSource."""

    def __init__(
        self,
        channel: CGMConfigChannel,
        deps: SourceDependencies,
        factory: SourceFactory = build_source,
    ) -> None:
        self._channel = channel
        self._deps = deps
        self._factory = factory
        self._active: GlucoseSource | None = None
        self._key: tuple | None = None

    @property
    def active(self) -> GlucoseSource | None:
        return self._active

    def set_push_handler(self, on_push: PushHandler | None) -> None:
        """Route readings pushed by buffered sources to ``on_push``."""
        self._deps.on_push = on_push
        if isinstance(self._active, BufferedSource):
            self._active.attach(on_push)

    def resolve(self) -> GlucoseSource:
        """Return the source for the current configuration."""
        config = self._channel.current
        key = source_key(config)
        if self._active is not None and key == self._key:
            return self._active

        previous = self._active
        source = self._factory(config, self._deps)
        if isinstance(source, BufferedSource):
            source.attach(self._deps.on_push)
        self._active = source
        self._key = key
        logger.info(
            "Glucose source set to %s (transmitter=%s)",
            source.SOURCE_ID,
            config.source.transmitter_id,
        )
        if previous is not None and previous is not source:
            if isinstance(previous, TransmitterSource):
                previous.release()
            elif isinstance(previous, BufferedSource):
                previous.attach(None)
        return source

    def source_info(self) -> dict[str, Any]:
        """Diagnostics of the active source (resolving it if needed)."""
        return self.resolve().source_info()
