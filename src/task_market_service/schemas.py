"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok", "degraded"]
    uptime_seconds: float
    started_at: str
    tasks_by_status: dict[str, int]
    settlements_in_flight: int
    pending_recovery_records: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class EarningsResponse(BaseModel):
    """Response model for GET /users/{user_id}/earnings."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    total_earnings: int
    total_tasks_completed: int
    updated_at: str | None
