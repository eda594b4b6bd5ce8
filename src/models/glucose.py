"""Pydantic models for glucose readings and pipeline status."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from src.models.base import GlucolinkBase


class GlucoseReadingRead(GlucolinkBase):
    id: str
    timestamp: datetime
    value: float = Field(ge=0)
    source: str
    device: str | None = None
    direction: str | None = None


class SourceInfoRead(GlucolinkBase):
    source: str
    info: dict[str, Any] = Field(default_factory=dict)


class RefreshAccepted(GlucolinkBase):
    status: str = "queued"
    source: str


class CycleRead(GlucolinkBase):
    status: str
    candidates: int
    stored: int
    cursor: datetime | None = None
    smoothed: bool = False
    reconciled_at: datetime
