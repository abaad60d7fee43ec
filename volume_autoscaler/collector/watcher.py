"""Resumable watch over one Kubernetes resource type.

The stream resumes from the last seen resourceVersion (bookmarks included).
Failed streams are retried with exponential back-off between 1 s and 60 s.
A 410 Gone, or a third consecutive failure, triggers a relist that replays
every current object as ADDED, so nothing changed while disconnected is
missed.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from volume_autoscaler.observability.logging import get_logger
from volume_autoscaler.observability.metrics import (
    watcher_backoff_seconds,
    watcher_errors_total,
    watcher_events_total,
    watcher_reconnects_total,
)

_BACKOFF_MIN_S: float = 1.0
_BACKOFF_MAX_S: float = 60.0
_BACKOFF_MULTIPLIER: float = 2.0

_MAX_CONSECUTIVE_FAILURES: int = 3
_RELIST_TIMEOUT_S: float = 30.0


@dataclass
class _Backoff:
    """Retry delay that doubles per failure until a success resets it."""

    delay: float = _BACKOFF_MIN_S
    failures: int = 0

    def fail(self) -> float:
        """Count a failure and return how long to wait before retrying."""
        self.failures += 1
        current = self.delay
        self.delay = min(self.delay * _BACKOFF_MULTIPLIER, _BACKOFF_MAX_S)
        return current

    def reset(self) -> None:
        self.delay = _BACKOFF_MIN_S
        self.failures = 0

    @property
    def exhausted(self) -> bool:
        return self.failures >= _MAX_CONSECUTIVE_FAILURES


class BaseWatcher(ABC):
    """Runs a watch stream in a background task and hands events to a subclass.

    Subclasses provide the list function and its arguments, and
    :meth:`_handle_event`, which receives every object as a plain dict.
    """

    def __init__(self, api: Any, name: str) -> None:
        self._api = api
        self._name = name
        self._log = get_logger(f"watcher.{name}")

        self._resource_version = ""
        self._backoff = _Backoff()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._watch_loop(), name=f"watcher-{self._name}")
        self._log.info("watcher_started", watcher=self._name)

    async def stop(self) -> None:
        """Cancel the watch task and wait for it to finish."""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._log.info("watcher_stopped", watcher=self._name)

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @abstractmethod
    def _list_func(self) -> Callable[..., Coroutine[Any, Any, Any]]:
        """API list function, used both for relists and by Watch.stream()."""

    def _list_kwargs(self) -> dict[str, Any]:
        return {}

    @abstractmethod
    async def _handle_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """Handle an ADDED, MODIFIED or DELETED object."""

    # ------------------------------------------------------------------
    # Stream handling
    # ------------------------------------------------------------------

    async def _watch_loop(self) -> None:
        await self._relist("startup")
        while self._running:
            try:
                await self._run_watch()
            except ApiException as exc:
                await self._on_api_error(exc)
            except Exception as exc:
                if not self._running:
                    return
                self._log.error("watch_unexpected_error", watcher=self._name, error=str(exc), exc_info=True)
                await self._retry("unexpected")

    async def _run_watch(self) -> None:
        """Consume one watch stream until the server closes it.

        Raises ApiException for ERROR events so the caller can pick a
        recovery path.
        """
        kwargs = {**self._list_kwargs(), "allow_watch_bookmarks": True}
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version

        stream = watch.Watch()
        try:
            async for raw_event in stream.stream(self._list_func(), **kwargs):
                if not self._running:
                    return
                await self._dispatch(raw_event)
        finally:
            await stream.close()

        self._log.debug("watch_stream_ended", watcher=self._name, resource_version=self._resource_version)
        watcher_reconnects_total.labels(watcher=self._name, reason="stream_end").inc()

    async def _dispatch(self, raw_event: dict[str, Any]) -> None:
        event_type = str(raw_event.get("type", ""))
        obj = _event_object(raw_event)
        if event_type == "ERROR":
            raise ApiException(status=int(obj.get("code") or 0), reason=str(obj.get("message", "watch error")))

        rv = _extract_rv(obj)
        if rv:
            self._resource_version = rv
        if event_type == "BOOKMARK":
            return

        watcher_events_total.labels(watcher=self._name, event_type=event_type).inc()
        await self._handle_event(event_type, obj)
        self._backoff.reset()

    async def _on_api_error(self, exc: ApiException) -> None:
        watcher_errors_total.labels(watcher=self._name, status_code=str(exc.status)).inc()
        if exc.status == 410:
            self._log.warning("watch_gone_410", watcher=self._name)
            watcher_reconnects_total.labels(watcher=self._name, reason="410").inc()
            await self._relist("410")
            return
        self._log.warning(
            "watch_api_error",
            watcher=self._name,
            status=exc.status,
            reason=exc.reason,
            consecutive_failures=self._backoff.failures + 1,
        )
        await self._retry(str(exc.status))

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _retry(self, reason: str) -> None:
        """Wait out the next back-off step; relist once failures pile up."""
        watcher_reconnects_total.labels(watcher=self._name, reason=reason).inc()
        await self._sleep_backoff(reason)
        if self._backoff.exhausted:
            await self._relist(f"{reason}_limit")

    async def _sleep_backoff(self, reason: str) -> None:
        delay = self._backoff.fail()
        self._log.debug("watcher_backoff", watcher=self._name, reason=reason, delay_s=delay)
        watcher_backoff_seconds.labels(watcher=self._name).observe(delay)
        await asyncio.sleep(delay)

    async def _relist(self, reason: str) -> None:
        """Fetch a fresh listing and replay each item as ADDED."""
        self._log.info("relist_start", watcher=self._name, reason=reason)
        self._resource_version = ""
        try:
            async with asyncio.timeout(_RELIST_TIMEOUT_S):
                listing = await self._list_func()(**self._list_kwargs())
        except (ApiException, TimeoutError, OSError) as exc:
            self._log.error("relist_failed", watcher=self._name, reason=reason, error=str(exc))
            await self._sleep_backoff("relist_failed")
            return

        items, rv = _list_items(listing)
        for item in items:
            await self._handle_event("ADDED", item)
        self._resource_version = rv
        self._backoff.reset()
        self._log.info("relist_complete", watcher=self._name, items=len(items), resource_version=rv)


def _event_object(raw_event: dict[str, Any]) -> dict[str, Any]:
    """Return the event's object as a plain dict.

    Custom object streams yield dicts already; typed streams carry the
    dict form under ``raw_object``.
    """
    obj = raw_event.get("raw_object")
    if not isinstance(obj, dict):
        obj = raw_event.get("object")
    return obj if isinstance(obj, dict) else {}


def _extract_rv(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata")
    if isinstance(metadata, dict):
        return str(metadata.get("resourceVersion") or "")
    return ""


def _list_items(listing: Any) -> tuple[list[dict[str, Any]], str]:
    """Split a list response into item dicts and the list resourceVersion."""
    if not isinstance(listing, dict):
        return [], ""
    items = [item for item in listing.get("items") or [] if isinstance(item, dict)]
    return items, _extract_rv(listing)
