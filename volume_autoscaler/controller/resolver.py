"""Resolve a policy target to the PVCs it governs."""

from __future__ import annotations

from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException

from volume_autoscaler.errors import InvalidTargetError, VolumeNotFoundError
from volume_autoscaler.models.policy import PVCNameTarget, SelectorTarget, Target
from volume_autoscaler.models.volume import VolumeClaim
from volume_autoscaler.observability.logging import get_logger

_logger = get_logger("controller.resolver")


class TargetResolver:
    """Looks up PVCs through a kubernetes_asyncio ``CoreV1Api``.

    Args:
        core_api: CoreV1Api instance.
        request_timeout: per-call timeout forwarded as ``_request_timeout``.
    """

    def __init__(self, core_api: Any, request_timeout: float = 30.0) -> None:
        self._core = core_api
        self._request_timeout = request_timeout

    async def resolve(self, namespace: str, target: Target) -> list[VolumeClaim]:
        """Return the PVCs matched by *target* in *namespace*.

        A named target yields exactly one claim or raises VolumeNotFoundError.
        A selector target yields every match, possibly none.
        """
        match target:
            case PVCNameTarget(name=name):
                return [await self._get_named(namespace, name)]
            case SelectorTarget(selector=selector):
                return await self._list_selected(namespace, selector.to_selector_string())
        raise InvalidTargetError("target must specify either pvcName or selector")

    async def _get_named(self, namespace: str, name: str) -> VolumeClaim:
        try:
            pvc = await self._core.read_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                _request_timeout=self._request_timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise VolumeNotFoundError(namespace, name) from exc
            raise
        return VolumeClaim.from_api(pvc)

    async def _list_selected(self, namespace: str, label_selector: str) -> list[VolumeClaim]:
        result = await self._core.list_namespaced_persistent_volume_claim(
            namespace=namespace,
            label_selector=label_selector,
            _request_timeout=self._request_timeout,
        )
        claims = [VolumeClaim.from_api(item) for item in result.items or []]
        _logger.debug("pvcs_selected", namespace=namespace, selector=label_selector, count=len(claims))
        return claims
