"""Glucose sources for Glucolink.

Each source implements the GlucoseSource ABC and yields canonical
GlucoseReading objects:

Available sources:
    DexcomG5Source / DexcomG6Source / DexcomG7Source — Dexcom transmitters
    LibreTransmitterSource — Libre bridge transmitter
    AppGroupSource         — xDrip / GlucoseDirect shared storage
    NightscoutClient       — Nightscout remote mirror
    PumpChannelSource      — Enlite sensor relayed by the pump
    GlucoseSimulatorSource — deterministic simulator

``build_source`` maps a configuration to exactly one source instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from src.cgm.base import GlucoseSource
from src.cgm.config_loader import CGMConfig, CGMType
from src.cgm.sources.app_group import AppGroupSource
from src.cgm.sources.nightscout import NightscoutClient
from src.cgm.sources.pump import PumpChannelSource
from src.cgm.sources.simulator import GlucoseSimulatorSource
from src.cgm.sources.transmitter import (
    DexcomG5Source,
    DexcomG6Source,
    DexcomG7Source,
    LibreTransmitterSource,
    PushHandler,
    TransmitterSource,
)

__all__ = [
    "AppGroupSource",
    "DexcomG5Source",
    "DexcomG6Source",
    "DexcomG7Source",
    "GlucoseSimulatorSource",
    "LibreTransmitterSource",
    "NightscoutClient",
    "PumpChannelSource",
    "SourceDependencies",
    "TransmitterSource",
    "UnknownSourceError",
    "build_source",
    "source_key",
]


class UnknownSourceError(KeyError):
    """Raised when a CGM type has no registered source (programming error)."""


@dataclass
class SourceDependencies:
    """Long-lived collaborators shared by the sources.

    Attributes:
        shared_dir: Root of the companion apps' shared storage.
        nightscout: The Nightscout client (also used as cloud mirror).
        pump:       The pump-channel source owned by the pump driver.
        on_push:    Handler for readings pushed by hardware sources.
    """

    shared_dir: Path
    nightscout: NightscoutClient | None = None
    pump: PumpChannelSource = field(default_factory=PumpChannelSource)
    on_push: PushHandler | None = None


# Registry: CGM type → transmitter source class
TRANSMITTER_REGISTRY: dict[CGMType, type[TransmitterSource]] = {
    CGMType.DEXCOM_G5: DexcomG5Source,
    CGMType.DEXCOM_G6: DexcomG6Source,
    CGMType.DEXCOM_G7: DexcomG7Source,
    CGMType.LIBRE_TRANSMITTER: LibreTransmitterSource,
}

_APP_GROUP_NAMES: dict[CGMType, str] = {
    CGMType.XDRIP: "xDrip",
    CGMType.GLUCOSE_DIRECT: "GlucoseDirect",
}


def source_key(config: CGMConfig) -> tuple[CGMType, str | None]:
    """Identity of the source a configuration selects.

    Two configurations with the same key resolve to the same instance.  Only
    hardware sources are scoped to a transmitter id.
    """
    cgm = config.source.cgm
    if cgm in TRANSMITTER_REGISTRY:
        return cgm, config.source.transmitter_id
    return cgm, None


def build_source(config: CGMConfig, deps: SourceDependencies) -> GlucoseSource:
    """Return the source selected by ``config``.

    Args:
        config: Current CGM configuration.
        deps:   Shared collaborators.

    Returns:
        A new source instance, or the shared instance for Nightscout and the
        pump channel.

    Raises:
        UnknownSourceError: If ``config.source.cgm`` has no registered source.
    """
    cgm = config.source.cgm
    if cgm in TRANSMITTER_REGISTRY:
        return TRANSMITTER_REGISTRY[cgm](config.source.transmitter_id, on_push=deps.on_push)
    if cgm in _APP_GROUP_NAMES:
        return AppGroupSource(_APP_GROUP_NAMES[cgm], cgm.value, deps.shared_dir)
    if cgm is CGMType.NIGHTSCOUT:
        if deps.nightscout is None:
            raise UnknownSourceError("Nightscout source selected but no site is configured")
        return deps.nightscout
    if cgm is CGMType.ENLITE:
        return deps.pump
    if cgm is CGMType.SIMULATOR:
        return GlucoseSimulatorSource(config.simulator)
    raise UnknownSourceError(f"No glucose source registered for '{cgm}'")


SourceFactory = Callable[[CGMConfig, SourceDependencies], GlucoseSource]
