"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.cgm.pipeline import CGMPipeline
from src.config import Settings, get_settings


async def get_pipeline(request: Request) -> CGMPipeline:
    """Return the pipeline built by the application lifespan."""
    pipeline: CGMPipeline | None = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="CGM pipeline not started")
    return pipeline


# Annotated shortcuts for route signatures
Pipeline = Annotated[CGMPipeline, Depends(get_pipeline)]
AppSettings = Annotated[Settings, Depends(get_settings)]
