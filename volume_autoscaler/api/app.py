"""FastAPI application factory."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from volume_autoscaler.api.routes import router


def create_app(reconciler: Any, queue: Any = None, watcher: Any = None) -> FastAPI:
    """Build the REST app around the running controller components."""
    from volume_autoscaler import __version__

    app = FastAPI(
        title="volume-autoscaler",
        version=__version__,
        description="Status and metrics for the PVC autoscaling controller.",
    )
    app.state.reconciler = reconciler
    app.state.queue = queue
    app.state.watcher = watcher
    app.include_router(router)
    return app
