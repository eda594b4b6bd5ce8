"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.cgm.store import ReadingStoreError
from src.dependencies import AppSettings

router = APIRouter(tags=["system"])
logger = logging.getLogger("glucolink.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness check. Returns 200 if the API process is up.

    Also reports the scheduler state and the current sync cursor.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    scheduler_ok = bool(pipeline and pipeline.scheduler.running)
    cursor = None
    if pipeline is not None:
        try:
            cursor = pipeline.store.sync_cursor().isoformat()
        except ReadingStoreError as exc:
            logger.warning("Health check store read failed: %s", exc)

    return {
        "status": "healthy" if scheduler_ok and cursor else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "scheduler": "running" if scheduler_ok else "stopped",
        "sync_cursor": cursor,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
