"""Glucolink API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.cgm.config_loader import get_cgm_channel
from src.cgm.pipeline import build_pipeline
from src.config import get_settings
from src.routers import cgm, health

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("glucolink")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info(
        "Starting Glucolink API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    pipeline = build_pipeline(settings, channel=get_cgm_channel(settings.cgm_config_path))
    app.state.pipeline = pipeline
    await pipeline.scheduler.start()
    yield
    await pipeline.scheduler.stop()
    app.state.pipeline = None
    logger.info("Glucolink API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Glucolink API",
        description=(
            "CGM acquisition and reconciliation into one monotonic glucose "
            "timeline from interchangeable sources."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(cgm.router, prefix=v1_prefix)

    return app


app = create_app()
