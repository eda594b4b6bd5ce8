"""Load, validate, and hot-reload the CGM pipeline configuration.

The config lives in ``cgm_config.yaml`` alongside this module (the path can be
overridden through settings).  It is loaded once at startup and held by a
``CGMConfigChannel``.  Call ``reload_cgm_config()`` after the user changes the
CGM selection or smoothing settings: subscribers are notified and the next
scheduler cycle resolves its source from the new values, no restart required.

Usage::

    from src.cgm.config_loader import get_cgm_channel

    channel = get_cgm_channel()
    channel.current.source.cgm              # CGMType.SIMULATOR
    channel.current.smoothing.frame_size    # 1 for 5-minute sampling
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger("glucolink.cgm.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "cgm_config.yaml"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class CGMType(str, Enum):
    """Every selectable glucose source variant."""

    XDRIP = "xdrip"
    DEXCOM_G5 = "dexcom_g5"
    DEXCOM_G6 = "dexcom_g6"
    DEXCOM_G7 = "dexcom_g7"
    NIGHTSCOUT = "nightscout"
    SIMULATOR = "simulator"
    LIBRE_TRANSMITTER = "libre_transmitter"
    GLUCOSE_DIRECT = "glucose_direct"
    ENLITE = "enlite"


class SamplingInterval(str, Enum):
    """Sampling interval class of the connected CGM."""

    ONE_MINUTE = "1min"
    THREE_MINUTES = "3min"
    FIVE_MINUTES = "5min"


# Number of samples on each side of the smoothed point: 2w+1 values cover
# roughly ten minutes of data in every class.
_FRAME_SIZES: dict[SamplingInterval, int] = {
    SamplingInterval.ONE_MINUTE: 5,
    SamplingInterval.THREE_MINUTES: 2,
    SamplingInterval.FIVE_MINUTES: 1,
}

_NOMINAL_MINUTES: dict[SamplingInterval, int] = {
    SamplingInterval.ONE_MINUTE: 1,
    SamplingInterval.THREE_MINUTES: 3,
    SamplingInterval.FIVE_MINUTES: 5,
}

_DEFAULT_MIN_INTERVAL_SECONDS: dict[SamplingInterval, float] = {
    SamplingInterval.ONE_MINUTE: 45,
    SamplingInterval.THREE_MINUTES: 150,
    SamplingInterval.FIVE_MINUTES: 210,
}


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceConfig:
    """The selected CGM variant plus its per-variant parameters."""

    cgm: CGMType
    transmitter_id: str | None = None


@dataclass(frozen=True)
class SmoothingConfig:
    """Glucose smoothing settings."""

    enabled: bool
    interval: SamplingInterval

    @property
    def frame_size(self) -> int:
        """Half-width ``w`` of the smoothing window."""
        return _FRAME_SIZES[self.interval]

    @property
    def passes(self) -> int:
        """Number of repeated smoothing passes.

        Denser sampling tolerates more aggressive smoothing.
        """
        return 2 if self.interval is SamplingInterval.FIVE_MINUTES else 3

    @property
    def nominal_interval(self) -> timedelta:
        return timedelta(minutes=_NOMINAL_MINUTES[self.interval])


@dataclass(frozen=True)
class FilterConfig:
    """Frequency filter and smoothing lookback settings."""

    min_interval_seconds: dict[SamplingInterval, float]
    lookback_minutes: int = 31

    def min_interval(self, interval: SamplingInterval) -> timedelta:
        """Return the minimum spacing accepted between two stored readings."""
        return timedelta(seconds=self.min_interval_seconds[interval])

    @property
    def lookback(self) -> timedelta:
        return timedelta(minutes=self.lookback_minutes)


@dataclass(frozen=True)
class SimulatorConfig:
    """Deterministic simulator parameters."""

    seed: int = 42
    interval_minutes: int = 5
    base_mg_dl: float = 120.0
    amplitude_mg_dl: float = 40.0
    period_minutes: int = 180
    noise_mg_dl: float = 4.0


@dataclass(frozen=True)
class CGMConfig:
    """Complete, validated CGM configuration.

    Attributes:
        version:   Config schema version string.
        source:    Selected CGM variant and transmitter id.
        smoothing: Smoothing enabled flag and sampling class.
        filter:    Frequency filter intervals and smoothing lookback.
        simulator: Parameters for the simulator source.
    """

    version: str
    source: SourceConfig
    smoothing: SmoothingConfig
    filter: FilterConfig
    simulator: SimulatorConfig = field(default_factory=SimulatorConfig)

    @property
    def min_interval(self) -> timedelta:
        """Minimum reading spacing for the configured sampling class."""
        return self.filter.min_interval(self.smoothing.interval)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when cgm_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml  # pyyaml

    if not path.exists():
        raise FileNotFoundError(f"CGM config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> CGMConfig:
    """Validate the raw YAML dict and construct a CGMConfig.

    Performs structural validation and applies defaults for optional fields.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Source ──
    src_raw = raw.get("source") or {}
    cgm: CGMType | None = None
    cgm_value = src_raw.get("cgm")
    if cgm_value is None:
        errors.append("'source.cgm' is required")
    else:
        try:
            cgm = CGMType(str(cgm_value))
        except ValueError:
            errors.append(
                f"source.cgm = {cgm_value!r} is not one of "
                f"{[t.value for t in CGMType]}"
            )
    transmitter_id = src_raw.get("transmitter_id") or None
    if transmitter_id is not None:
        transmitter_id = str(transmitter_id).strip() or None

    # ── Smoothing ──
    sm_raw = raw.get("smoothing") or {}
    interval = SamplingInterval.FIVE_MINUTES
    try:
        interval = SamplingInterval(str(sm_raw.get("interval", "5min")))
    except ValueError:
        errors.append(
            f"smoothing.interval = {sm_raw.get('interval')!r} is not one of "
            f"{[i.value for i in SamplingInterval]}"
        )
    smoothing = SmoothingConfig(
        enabled=bool(sm_raw.get("enabled", False)),
        interval=interval,
    )

    # ── Frequency filter ──
    f_raw = raw.get("filter") or {}
    min_intervals = dict(_DEFAULT_MIN_INTERVAL_SECONDS)
    for key, val in (f_raw.get("min_interval_seconds") or {}).items():
        try:
            klass = SamplingInterval(str(key))
        except ValueError:
            errors.append(f"filter.min_interval_seconds.{key} is not a sampling class")
            continue
        try:
            seconds = float(val)
        except (TypeError, ValueError):
            errors.append(
                f"filter.min_interval_seconds.{key} must be a number, got {val!r}"
            )
            continue
        if seconds < 0:
            errors.append(f"filter.min_interval_seconds.{key} must be >= 0")
        min_intervals[klass] = seconds
    lookback_minutes = int(f_raw.get("lookback_minutes", 31))
    if lookback_minutes <= 0:
        errors.append("filter.lookback_minutes must be positive")

    # ── Simulator ──
    sim_raw = raw.get("simulator") or {}
    simulator = SimulatorConfig(
        seed=int(sim_raw.get("seed", 42)),
        interval_minutes=int(sim_raw.get("interval_minutes", 5)),
        base_mg_dl=float(sim_raw.get("base_mg_dl", 120.0)),
        amplitude_mg_dl=float(sim_raw.get("amplitude_mg_dl", 40.0)),
        period_minutes=int(sim_raw.get("period_minutes", 180)),
        noise_mg_dl=float(sim_raw.get("noise_mg_dl", 4.0)),
    )
    if simulator.interval_minutes <= 0:
        errors.append("simulator.interval_minutes must be positive")

    if errors or cgm is None:
        raise ConfigValidationError(
            f"cgm_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return CGMConfig(
        version=version,
        source=SourceConfig(cgm=cgm, transmitter_id=transmitter_id),
        smoothing=smoothing,
        filter=FilterConfig(
            min_interval_seconds=min_intervals,
            lookback_minutes=lookback_minutes,
        ),
        simulator=simulator,
    )


def load_cgm_config(path: Path | None = None) -> CGMConfig:
    """Load and validate the CGM config from disk.

    Args:
        path: Override path to YAML. Uses the bundled cgm_config.yaml by default.

    Returns:
        Validated CGMConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info(
        "Loaded CGM config v%s from %s (cgm=%s)",
        config.version,
        target,
        config.source.cgm.value,
    )
    return config


# ---------------------------------------------------------------------------
# Change notification channel
# ---------------------------------------------------------------------------

ConfigListener = Callable[[CGMConfig], None]


class CGMConfigChannel:
    """Holds the current CGMConfig and notifies subscribers on change.

    Readers take ``current`` at the start of each cycle.  Publishing never
    interrupts work already in flight; it only affects the next read.
    """

    def __init__(self, initial: CGMConfig) -> None:
        self._current = initial
        self._listeners: list[ConfigListener] = []
        self._lock = threading.Lock()

    @property
    def current(self) -> CGMConfig:
        return self._current

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, config: CGMConfig) -> None:
        """Replace the current config and notify listeners if it changed."""
        with self._lock:
            old = self._current
            self._current = config
            listeners = list(self._listeners)
        if config == old:
            return
        logger.info(
            "CGM config changed: %s/%s → %s/%s",
            old.source.cgm.value,
            old.source.transmitter_id,
            config.source.cgm.value,
            config.source.transmitter_id,
        )
        for listener in listeners:
            listener(config)


# ---------------------------------------------------------------------------
# Global channel with hot-reload support
# ---------------------------------------------------------------------------

_channel: CGMConfigChannel | None = None
_channel_lock = threading.Lock()


def get_cgm_channel(path: Path | None = None) -> CGMConfigChannel:
    """Return the global CGMConfigChannel, loading the config on first call.

    Thread-safe.  Use ``reload_cgm_config()`` to refresh after YAML changes.
    """
    global _channel
    if _channel is None:
        with _channel_lock:
            if _channel is None:  # double-checked locking
                _channel = CGMConfigChannel(load_cgm_config(path))
    return _channel


def get_cgm_config() -> CGMConfig:
    """Return the current CGMConfig from the global channel."""
    return get_cgm_channel().current


def reload_cgm_config(path: Path | None = None) -> CGMConfig:
    """Reload the CGM config from disk and publish it on the global channel.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    new_config = load_cgm_config(path)  # validate before publishing
    channel = get_cgm_channel(path)
    channel.publish(new_config)
    return new_config
