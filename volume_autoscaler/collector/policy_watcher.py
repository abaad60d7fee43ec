"""Watcher for VolumeAutoscaler custom objects.

ADDED events and MODIFIED events that change metadata.generation queue the
policy for an immediate reconcile. Status writes leave the generation alone,
so the controller's own updates do not retrigger it.
DELETED events drop any pending wake for the policy.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

from volume_autoscaler.collector.watcher import BaseWatcher
from volume_autoscaler.models.policy import API_GROUP, API_VERSION, PLURAL

KeyCallback = Callable[[str], None]


class PolicyWatcher(BaseWatcher):
    """Streams VolumeAutoscaler changes cluster-wide or in one namespace.

    Usage::

        custom = kubernetes_asyncio.client.CustomObjectsApi()
        watcher = PolicyWatcher(custom, on_change=queue.add, on_delete=queue.forget)
        await watcher.start()
    """

    def __init__(
        self,
        api: Any,
        on_change: KeyCallback,
        on_delete: KeyCallback,
        namespace: str = "",
    ) -> None:
        super().__init__(api, name="volumeautoscaler")
        self._on_change = on_change
        self._on_delete = on_delete
        self._namespace = namespace
        self._generations: dict[str, int] = {}

    def _list_func(self) -> Callable[..., Coroutine[Any, Any, Any]]:
        if self._namespace:
            return self._api.list_namespaced_custom_object  # type: ignore[no-any-return]
        return self._api.list_cluster_custom_object  # type: ignore[no-any-return]

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"group": API_GROUP, "version": API_VERSION, "plural": PLURAL}
        if self._namespace:
            kwargs["namespace"] = self._namespace
        return kwargs

    async def _handle_event(self, event_type: str, obj: dict[str, Any]) -> None:
        key = policy_key(obj)
        if not key:
            self._log.debug("event_without_key", event_type=event_type)
            return
        generation = int((obj.get("metadata") or {}).get("generation") or 0)
        if event_type == "DELETED":
            self._generations.pop(key, None)
            self._log.info("policy_deleted", policy=key)
            self._on_delete(key)
        elif event_type == "MODIFIED" and self._generations.get(key) == generation:
            return
        elif event_type in ("ADDED", "MODIFIED"):
            self._generations[key] = generation
            self._log.debug("policy_changed", policy=key, event_type=event_type)
            self._on_change(key)


def policy_key(obj: dict[str, Any]) -> str:
    """Return ``namespace/name`` for a raw object, or "" when incomplete."""
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        return ""
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return ""
    return f"{namespace}/{name}"
