"""Assemble the CGM pipeline from settings.

Built once at application startup; the returned object owns every long-lived
component and is torn down with ``scheduler.stop()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from src.cgm.base import utc_now
from src.cgm.collaborators import (
    CloudMirror,
    DeviceHeartbeat,
    DisabledCloudMirror,
    DisabledHealthStore,
    HealthStore,
    KeepAlive,
    LoggingKeepAlive,
)
from src.cgm.config_loader import CGMConfigChannel, load_cgm_config
from src.cgm.history import GlucoseHistory
from src.cgm.reconciler import Reconciler
from src.cgm.resolver import SourceResolver
from src.cgm.scheduler import FetchScheduler
from src.cgm.sources import NightscoutClient, SourceDependencies
from src.cgm.store import SQLiteReadingStore
from src.config import Settings

logger = logging.getLogger("glucolink.cgm.pipeline")


@dataclass
class CGMPipeline:
    """Every long-lived component of the glucose pipeline."""

    channel: CGMConfigChannel
    store: SQLiteReadingStore
    resolver: SourceResolver
    reconciler: Reconciler
    scheduler: FetchScheduler
    history: GlucoseHistory
    heartbeat: DeviceHeartbeat
    cloud: CloudMirror
    health: HealthStore
    sources: SourceDependencies


def build_pipeline(
    settings: Settings,
    channel: CGMConfigChannel | None = None,
    health: HealthStore | None = None,
    keep_alive: KeepAlive | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> CGMPipeline:
    """Construct the pipeline.

    Args:
        settings:   Process settings.
        channel:    Config channel; a private one is loaded when omitted.
        health:     Health-record store; disabled when omitted.
        keep_alive: Background-execution facility.
        clock:      Returns the current UTC time.
    """
    channel = channel or CGMConfigChannel(load_cgm_config(settings.cgm_config_path))
    store = SQLiteReadingStore(
        settings.database_path,
        min_interval=lambda: channel.current.min_interval,
        retention=timedelta(hours=settings.retention_hours),
        clock=clock,
    )

    nightscout: NightscoutClient | None = None
    if settings.nightscout_url:
        nightscout = NightscoutClient(
            settings.nightscout_url,
            settings.nightscout_api_secret or None,
            store=store,
            clock=clock,
        )
    cloud: CloudMirror = nightscout or DisabledCloudMirror()
    health = health or DisabledHealthStore()
    heartbeat = DeviceHeartbeat()

    deps = SourceDependencies(shared_dir=settings.shared_storage_dir, nightscout=nightscout)
    resolver = SourceResolver(channel, deps)
    reconciler = Reconciler(
        store,
        channel,
        heartbeat,
        cloud,
        health,
        keep_alive or LoggingKeepAlive(),
        clock=clock,
    )
    scheduler = FetchScheduler(
        resolver,
        reconciler,
        store,
        health,
        interval_seconds=settings.poll_interval_seconds,
    )
    logger.info(
        "CGM pipeline built (db=%s, nightscout=%s)",
        settings.database_path,
        bool(nightscout),
    )
    return CGMPipeline(
        channel=channel,
        store=store,
        resolver=resolver,
        reconciler=reconciler,
        scheduler=scheduler,
        history=GlucoseHistory(store, health, cloud),
        heartbeat=heartbeat,
        cloud=cloud,
        health=health,
        sources=deps,
    )
