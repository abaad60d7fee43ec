"""Keyed async work queue for policy reconciles.

Keys are ``namespace/name``. A key is held by at most one worker at a time;
a key re-added while it is being processed is marked dirty and queued again
once the worker is done. Delayed requeues are tracked as explicit next-wake
times so an earlier wake always replaces a later one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from volume_autoscaler.observability.metrics import queue_depth, queue_scheduled

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from volume_autoscaler.controller.reconciler import ReconcileResult

_logger = structlog.get_logger(component="reconcile_queue")

_DEFAULT_WORKERS: int = 4
_DEFAULT_ERROR_BACKOFF_S: float = 30.0


@dataclass
class _Wake:
    when: float
    handle: asyncio.TimerHandle


class ReconcileQueue:
    """Bounded worker pool over a deduplicated set of keys.

    Lifecycle::

        queue = ReconcileQueue(reconcile_fn, workers=4)
        await queue.start()
        queue.add("default/data")
        await queue.stop()
    """

    def __init__(
        self,
        reconcile_fn: Callable[[str], Awaitable[ReconcileResult]],
        workers: int = _DEFAULT_WORKERS,
        error_backoff: float = _DEFAULT_ERROR_BACKOFF_S,
    ) -> None:
        self._reconcile_fn = reconcile_fn
        self._num_workers = max(1, workers)
        self._error_backoff = error_backoff

        # Initialized in start()
        self._queue: asyncio.Queue[str | None]
        self._loop: asyncio.AbstractEventLoop | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._running = False

        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._wakes: dict[str, _Wake] = {}

    async def start(self) -> None:
        """Start worker tasks. Must be called before add()."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"reconcile_worker_{i}") for i in range(self._num_workers)
        ]
        _logger.info("reconcile_queue_started", workers=self._num_workers)

    async def stop(self) -> None:
        """Stop workers after their current item. Safe to call before start()."""
        self._running = False
        for wake in self._wakes.values():
            wake.handle.cancel()
        self._wakes.clear()
        queue_scheduled.set(0)
        if not self._workers:
            return
        for _ in self._workers:
            self._queue.put_nowait(None)
        for task in self._workers:
            await task
        self._workers = []
        _logger.info("reconcile_queue_stopped")

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def scheduled(self) -> dict[str, float]:
        """Pending wake times (event loop clock) by key."""
        return {key: wake.when for key, wake in self._wakes.items()}

    def add(self, key: str) -> None:
        """Queue *key* for immediate processing."""
        if not self._running:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)
        queue_depth.set(len(self._queued))
        _logger.debug("key_enqueued", key=key, queue_depth=len(self._queued))

    def add_after(self, key: str, delay: float) -> None:
        """Queue *key* after *delay* seconds unless an earlier wake is pending."""
        if not self._running or self._loop is None:
            return
        if delay <= 0:
            self.add(key)
            return
        when = self._loop.time() + delay
        existing = self._wakes.get(key)
        if existing is not None:
            if existing.when <= when:
                return
            existing.handle.cancel()
        handle = self._loop.call_at(when, self._fire, key)
        self._wakes[key] = _Wake(when=when, handle=handle)
        queue_scheduled.set(len(self._wakes))

    def forget(self, key: str) -> None:
        """Drop pending wakes and dirty marks for a deleted policy."""
        wake = self._wakes.pop(key, None)
        if wake is not None:
            wake.handle.cancel()
            queue_scheduled.set(len(self._wakes))
        self._dirty.discard(key)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fire(self, key: str) -> None:
        self._wakes.pop(key, None)
        queue_scheduled.set(len(self._wakes))
        self.add(key)

    async def _worker(self, worker_id: int) -> None:
        _logger.debug("worker_started", worker_id=worker_id)
        while True:
            key = await self._queue.get()
            if key is None:
                self._queue.task_done()
                break

            self._queued.discard(key)
            queue_depth.set(len(self._queued))
            self._processing.add(key)
            # The result of this run schedules the next wake.
            wake = self._wakes.pop(key, None)
            if wake is not None:
                wake.handle.cancel()
                queue_scheduled.set(len(self._wakes))

            try:
                result = await self._reconcile_fn(key)
            except Exception as exc:
                _logger.error("reconcile_failed", worker_id=worker_id, key=key, error=str(exc), exc_info=True)
                self.add_after(key, self._error_backoff)
            else:
                if result.error is not None:
                    _logger.warning("reconcile_error_requeue", key=key, error=str(result.error))
                    self.add_after(key, result.requeue_after or self._error_backoff)
                elif result.requeue_after is not None:
                    self.add_after(key, result.requeue_after)
            finally:
                self._processing.discard(key)
                self._queue.task_done()

            if key in self._dirty:
                self._dirty.discard(key)
                self.add(key)

        _logger.debug("worker_stopped", worker_id=worker_id)
