"""Pydantic response models for the REST API.

All models use Pydantic v2 syntax. Field descriptions are also used
by FastAPI to generate the OpenAPI spec.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class HealthStatus(BaseModel):
    """Response body for ``GET /healthz``."""

    status: str = Field(..., description='``"ok"`` while the controller loop is running, else ``"degraded"``.')
    version: str = Field(..., description="Installed volume-autoscaler version.")
    queue_depth: int = Field(default=0, description="Policy keys waiting for a worker.")
    scheduled: int = Field(default=0, description="Policy keys waiting for their next wake time.")
    watcher_running: bool = Field(default=False, description="Whether the policy watch stream is active.")


class PolicyOutcomeResponse(BaseModel):
    """Outcome of the most recent reconcile cycle for one policy."""

    policy: str = Field(..., description="Policy key in ``namespace/name`` form.")
    ready: bool
    reason: str = Field(default="", description="Reason on the Ready condition, e.g. ``Polling``.")
    message: str = ""
    volumes: int = Field(default=0, description="PVCs evaluated in the cycle.")
    expanded: int = Field(default=0, description="PVCs expanded in the cycle.")
    requeue_after_seconds: float | None = None
    error: str | None = None
    finished_at: datetime


class PolicyListResponse(BaseModel):
    """Response body for ``GET /api/v1/policies``."""

    policies: list[PolicyOutcomeResponse] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Uniform error envelope."""

    error: str = Field(..., description="Machine-readable error code.", examples=["NOT_FOUND"])
    detail: str = Field(..., description="Human-readable explanation.")
