"""CGM endpoints: refresh trigger, source diagnostics, glucose history."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.cgm.pipeline import CGMPipeline
from src.dependencies import Pipeline
from src.models.base import ErrorDetail
from src.models.glucose import (
    CycleRead,
    GlucoseReadingRead,
    RefreshAccepted,
    SourceInfoRead,
)


def _active_source(pipeline: CGMPipeline) -> tuple[str, dict[str, Any]]:
    """The source the worker currently holds, or the configured type if none yet.

    Never resolves: only the scheduler worker swaps sources.
    """
    source = pipeline.resolver.active
    if source is None:
        return pipeline.channel.current.source.cgm.value, {}
    return source.SOURCE_ID, source.source_info()


router = APIRouter(
    prefix="/cgm",
    tags=["cgm"],
    responses={503: {"model": ErrorDetail, "description": "Pipeline not started"}},
)


@router.post("/refresh", response_model=RefreshAccepted, status_code=202)
async def refresh_cgm(pipeline: Pipeline) -> Any:
    """Queue an immediate fetch, e.g. when the pump signals fresh data."""
    pipeline.scheduler.refresh_now()
    source_id, _ = _active_source(pipeline)
    return {"status": "queued", "source": source_id}


@router.get("/source", response_model=SourceInfoRead)
async def get_source(pipeline: Pipeline) -> Any:
    source_id, info = _active_source(pipeline)
    return {"source": source_id, "info": info}


@router.get("/last-cycle", response_model=CycleRead, responses={404: {"model": ErrorDetail}})
async def get_last_cycle(pipeline: Pipeline) -> Any:
    result = pipeline.scheduler.last_result
    if result is None:
        raise HTTPException(status_code=404, detail="No cycle has run yet")
    return {
        "status": result.status,
        "candidates": result.candidates,
        "stored": len(result.delta),
        "cursor": result.cursor_after,
        "smoothed": result.smoothed,
        "reconciled_at": result.reconciled_at,
    }


@router.get("/glucose", response_model=list[GlucoseReadingRead])
async def list_glucose(
    pipeline: Pipeline,
    limit: int = Query(default=288, ge=1, le=1440),
) -> Any:
    return pipeline.history.glucose()[:limit]


@router.delete("/glucose/manual", status_code=204)
async def delete_manual_glucose(
    pipeline: Pipeline,
    at: datetime | None = Query(default=None),
) -> None:
    await pipeline.history.delete_manual_glucose(at)


@router.delete(
    "/glucose/{reading_id}", status_code=204, responses={404: {"model": ErrorDetail}}
)
async def delete_glucose(reading_id: str, pipeline: Pipeline) -> None:
    if not await pipeline.history.delete_glucose(reading_id):
        raise HTTPException(status_code=404, detail="Glucose reading not found")
