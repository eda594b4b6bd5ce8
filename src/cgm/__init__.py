"""Glucolink CGM acquisition and reconciliation pipeline.

This package ingests glucose from one of several interchangeable sources,
merges it with the health-record store, removes duplicates and overly
frequent samples, optionally smooths the signal, persists the result and
fans it out to the device heartbeat, the cloud mirror and the health store.

Subpackages:
    sources/ — Glucose source variants (transmitters, shared storage,
               Nightscout, pump channel, simulator)

Core modules:
    base          — GlucoseSource ABC and canonical GlucoseReading
    config_loader — Load/validate/hot-reload cgm_config.yaml
    smoothing     — Quadratic Savitzky–Golay smoothing
    store         — SQLite reading store and frequency filter
    reconciler    — Merge / filter / smooth / persist / fan-out
    scheduler     — Timer, refresh trigger and serial worker
    resolver      — Active source selection
    history       — Glucose list and deletions
    pipeline      — Component assembly
"""

from src.cgm.base import FetchTrigger, GlucoseReading, GlucoseSource
from src.cgm.config_loader import CGMConfig, CGMConfigChannel, get_cgm_config

__all__ = [
    "GlucoseReading",
    "GlucoseSource",
    "FetchTrigger",
    "CGMConfig",
    "CGMConfigChannel",
    "get_cgm_config",
]
