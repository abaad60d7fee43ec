"""HTTP route handlers.

All routes are registered on a single APIRouter that ``app.py`` mounts.
Collaborators are read from ``request.app.state``.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from volume_autoscaler.api.schemas import ErrorResponse, HealthStatus, PolicyListResponse, PolicyOutcomeResponse
from volume_autoscaler.controller.reconciler import PolicyOutcome

router = APIRouter()


def _outcome_to_schema(outcome: PolicyOutcome) -> PolicyOutcomeResponse:
    return PolicyOutcomeResponse(
        policy=outcome.key,
        ready=outcome.ready,
        reason=outcome.reason,
        message=outcome.message,
        volumes=outcome.volumes,
        expanded=outcome.expanded,
        requeue_after_seconds=outcome.requeue_after,
        error=outcome.error,
        finished_at=outcome.finished_at,
    )


@router.get("/healthz", response_model=HealthStatus, summary="Liveness probe")
async def get_health(request: Request) -> HealthStatus:
    from volume_autoscaler import __version__

    queue = getattr(request.app.state, "queue", None)
    watcher = getattr(request.app.state, "watcher", None)
    watcher_running = bool(watcher is not None and watcher.running)
    return HealthStatus(
        status="ok" if watcher is None or watcher_running else "degraded",
        version=__version__,
        queue_depth=len(queue) if queue is not None else 0,
        scheduled=len(queue.scheduled) if queue is not None else 0,
        watcher_running=watcher_running,
    )


@router.get("/api/v1/policies", response_model=PolicyListResponse, summary="Last cycle outcome per policy")
async def list_policies(request: Request) -> PolicyListResponse:
    reconciler = request.app.state.reconciler
    return PolicyListResponse(policies=[_outcome_to_schema(o) for o in reconciler.outcomes()])


@router.get(
    "/api/v1/policies/{namespace}/{name}",
    response_model=PolicyOutcomeResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Last cycle outcome for one policy",
)
async def get_policy(namespace: str, name: str, request: Request) -> PolicyOutcomeResponse:
    key = f"{namespace}/{name}"
    for outcome in request.app.state.reconciler.outcomes():
        if outcome.key == key:
            return _outcome_to_schema(outcome)
    return JSONResponse(  # type: ignore[return-value]
        status_code=404,
        content=ErrorResponse(error="NOT_FOUND", detail=f"No reconcile recorded for {key}").model_dump(),
    )


@router.get("/metrics", include_in_schema=False)
async def get_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
