"""Process bootstrap: builds the controller and runs it until asked to stop.

Start order: config → logging → Kubernetes client → Prometheus registry
             → reconciler → work queue → policy watcher → REST server

Every component that needs cleanup pushes a teardown coroutine onto a stack
as it starts. ``stop()`` unwinds the stack, so shutdown mirrors startup and a
failed start only tears down what was already running.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from volume_autoscaler.config import load_config
from volume_autoscaler.models.config import AutoscalerConfig
from volume_autoscaler.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from volume_autoscaler.collector.policy_watcher import PolicyWatcher
    from volume_autoscaler.controller.queue import ReconcileQueue
    from volume_autoscaler.controller.reconciler import ReconcileResult, Reconciler
    from volume_autoscaler.prometheus.client import PrometheusClientRegistry

Teardown = Callable[[], Awaitable[None]]

_TEARDOWN_TIMEOUT_S = 15.0
_REST_GRACE_S = 10.0


class _ComponentError(Exception):
    """A required component could not be started."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class AutoscalerApp:
    """Owns the controller components. ``stop()`` is safe at any point."""

    def __init__(self, config: AutoscalerConfig | None = None) -> None:
        self.config = config

        self._api_client: Any = None
        self._prometheus: PrometheusClientRegistry | None = None
        self._reconciler: Reconciler | None = None
        self._queue: ReconcileQueue | None = None
        self._watcher: PolicyWatcher | None = None
        self._rest_server: Any = None
        self._rest_task: asyncio.Task[None] | None = None

        self._teardown: list[tuple[str, Teardown]] = []
        self._stop_requested = asyncio.Event()
        self._running = False
        self._log: FilteringBoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def wait_for_stop_request(self) -> None:
        await self._stop_requested.wait()

    async def start(self) -> None:
        """Start every component; raises _ComponentError naming the one that failed."""
        if self.config is None:
            self.config = load_config()
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("volume_autoscaler_starting", version=_version())

        await self._start("k8s_client", self._connect_kubernetes)
        await self._start("prometheus", self._build_prometheus)
        await self._start("reconciler", self._build_reconciler)
        await self._start("queue", self._start_queue)
        await self._start("watcher", self._start_watcher)
        await self._start("rest", self._start_rest)

        self._running = True
        controller = self.config.controller
        self._log.info(
            "volume_autoscaler_started",
            port=self.config.api.port,
            workers=controller.workers,
            namespace=controller.watch_namespace or "*",
        )

    async def stop(self) -> None:
        """Run the teardown stack, newest first. Failures are logged and skipped."""
        self._running = False
        if not self._teardown:
            return
        log = self._log or get_logger("app")
        log.info("volume_autoscaler_shutting_down", components=[name for name, _ in reversed(self._teardown)])
        while self._teardown:
            name, teardown = self._teardown.pop()
            try:
                await asyncio.wait_for(teardown(), timeout=_TEARDOWN_TIMEOUT_S)
            except TimeoutError:
                log.warning("component_stop_timed_out", component=name, timeout_s=_TEARDOWN_TIMEOUT_S)
            except Exception as exc:
                log.error("component_stop_failed", component=name, error=str(exc))
        self._api_client = None
        log.info("volume_autoscaler_stopped")

    async def _start(self, name: str, step: Callable[[], Awaitable[Teardown | None]]) -> None:
        try:
            teardown = await step()
        except Exception as exc:
            raise _ComponentError(name, exc) from exc
        if teardown is not None:
            self._teardown.append((name, teardown))

    # ------------------------------------------------------------------
    # Startup steps
    # ------------------------------------------------------------------

    async def _connect_kubernetes(self) -> Teardown:
        """In-cluster service account first, then the local kubeconfig."""
        import kubernetes_asyncio.config as k8s_config
        from kubernetes_asyncio import client as k8s_client

        log = self._log or get_logger("app")
        try:
            k8s_config.load_incluster_config()  # type: ignore[no-untyped-call]
            source = "in-cluster"
        except k8s_config.ConfigException:
            await k8s_config.load_kube_config()
            source = "kubeconfig"
        log.info("k8s_client_configured", source=source)

        self._api_client = k8s_client.ApiClient()
        return self._api_client.close  # type: ignore[no-any-return]

    async def _build_prometheus(self) -> Teardown:
        from volume_autoscaler.prometheus.client import PrometheusClientRegistry

        assert self.config is not None
        self._prometheus = PrometheusClientRegistry(timeout=self.config.prometheus.timeout_seconds)
        return self._prometheus.stop

    async def _build_reconciler(self) -> None:
        from kubernetes_asyncio import client as k8s_client

        from volume_autoscaler.controller.events import KubernetesEventRecorder
        from volume_autoscaler.controller.reconciler import Reconciler
        from volume_autoscaler.controller.resolver import TargetResolver
        from volume_autoscaler.controller.safety import SafetyChecker
        from volume_autoscaler.controller.status import StatusWriter

        assert self.config is not None
        assert self._prometheus is not None
        controller = self.config.controller
        timeout = controller.request_timeout_seconds
        core = k8s_client.CoreV1Api(self._api_client)
        custom = k8s_client.CustomObjectsApi(self._api_client)

        self._reconciler = Reconciler(
            custom_api=custom,
            resolver=TargetResolver(core, request_timeout=timeout),
            safety=SafetyChecker(k8s_client.StorageV1Api(self._api_client), request_timeout=timeout),
            recorder=KubernetesEventRecorder(core, request_timeout=timeout),
            status_writer=StatusWriter(custom, request_timeout=timeout),
            core_api=core,
            prometheus=self._prometheus,
            config=controller,
            default_prometheus_url=self.config.prometheus.default_url,
        )

    async def _start_queue(self) -> Teardown:
        from volume_autoscaler.controller.queue import ReconcileQueue

        assert self.config is not None
        assert self._reconciler is not None
        reconciler = self._reconciler

        async def reconcile_key(key: str) -> ReconcileResult:
            namespace, _, name = key.partition("/")
            return await reconciler.reconcile(namespace, name)

        self._queue = ReconcileQueue(
            reconcile_key,
            workers=self.config.controller.workers,
            error_backoff=self.config.controller.error_backoff_seconds,
        )
        await self._queue.start()
        return self._queue.stop

    async def _start_watcher(self) -> Teardown:
        from kubernetes_asyncio import client as k8s_client

        from volume_autoscaler.collector.policy_watcher import PolicyWatcher

        assert self.config is not None
        assert self._queue is not None
        assert self._reconciler is not None
        queue = self._queue
        reconciler = self._reconciler

        def on_delete(key: str) -> None:
            queue.forget(key)
            reconciler.forget(key)

        self._watcher = PolicyWatcher(
            k8s_client.CustomObjectsApi(self._api_client),
            on_change=queue.add,
            on_delete=on_delete,
            namespace=self.config.controller.watch_namespace,
        )
        await self._watcher.start()
        return self._watcher.stop

    async def _start_rest(self) -> Teardown:
        import uvicorn

        from volume_autoscaler.api.app import create_app

        assert self.config is not None
        fastapi_app = create_app(reconciler=self._reconciler, queue=self._queue, watcher=self._watcher)
        server = uvicorn.Server(
            uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # stdlib records flow through setup_logging's handler
                access_log=False,
            )
        )
        self._rest_server = server
        self._rest_task = asyncio.create_task(server.serve(), name="rest-server")
        self._rest_task.add_done_callback(self._on_rest_exit)
        (self._log or get_logger("app")).info("rest_api_started", port=self.config.api.port)
        return self._stop_rest

    def _on_rest_exit(self, task: asyncio.Task[None]) -> None:
        if not self._running:
            return
        error = None if task.cancelled() else task.exception()
        (self._log or get_logger("app")).error("rest_server_exited", error=str(error) if error else None)
        self.request_stop()

    async def _stop_rest(self) -> None:
        task = self._rest_task
        if self._rest_server is not None:
            self._rest_server.should_exit = True
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=_REST_GRACE_S)
            if not done:
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._rest_server = None
        self._rest_task = None


def _version() -> str:
    from volume_autoscaler import __version__

    return __version__


async def main() -> None:
    """Run the controller until SIGTERM or SIGINT."""
    app = AutoscalerApp()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.request_stop)

    try:
        await app.start()
        await app.wait_for_stop_request()
    except _ComponentError as exc:
        get_logger("app").critical("fatal_startup_error", component=exc.component, error=str(exc.cause))
        raise SystemExit(1) from exc
    finally:
        await app.stop()
