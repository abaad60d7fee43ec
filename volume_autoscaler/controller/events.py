"""Kubernetes Events attached to VolumeAutoscaler objects.

Event delivery is best effort: a failed POST is logged and counted, and
never fails the reconcile cycle.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio.client.exceptions import ApiException

from volume_autoscaler.models.policy import API_GROUP, API_VERSION, KIND, VolumeAutoscaler
from volume_autoscaler.observability.logging import get_logger

_logger = get_logger("controller.events")

_COMPONENT = "volume-autoscaler"


class EventType(StrEnum):
    NORMAL = "Normal"
    WARNING = "Warning"


class EventReason(StrEnum):
    EXPANDED = "Expanded"
    EXPAND_FAILED = "ExpandFailed"
    EXPANSION_SKIPPED = "ExpansionSkipped"
    VOLUME_UNHEALTHY = "VolumeUnhealthy"
    MAX_SIZE_REACHED = "MaxSizeReached"
    STORAGE_CLASS_NOT_EXPANDABLE = "StorageClassNotExpandable"


class EventRecorder(Protocol):
    """What the reconciler needs to publish events."""

    async def record(
        self,
        policy: VolumeAutoscaler,
        event_type: EventType,
        reason: EventReason,
        message: str,
    ) -> None: ...


class KubernetesEventRecorder:
    """Posts core/v1 Events with the policy as the involved object."""

    def __init__(self, core_api: Any, request_timeout: float = 30.0) -> None:
        self._core = core_api
        self._request_timeout = request_timeout

    async def record(
        self,
        policy: VolumeAutoscaler,
        event_type: EventType,
        reason: EventReason,
        message: str,
    ) -> None:
        now = datetime.now(tz=UTC)
        body = k8s_client.CoreV1Event(
            metadata=k8s_client.V1ObjectMeta(
                namespace=policy.namespace,
                name=f"{policy.name}.{uuid.uuid4().hex[:16]}",
            ),
            involved_object=k8s_client.V1ObjectReference(
                api_version=f"{API_GROUP}/{API_VERSION}",
                kind=KIND,
                name=policy.name,
                namespace=policy.namespace,
                uid=policy.uid or None,
                resource_version=policy.resource_version or None,
            ),
            reason=str(reason),
            message=message,
            type=str(event_type),
            source=k8s_client.V1EventSource(component=_COMPONENT),
            reporting_component=_COMPONENT,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            await self._core.create_namespaced_event(
                namespace=policy.namespace,
                body=body,
                _request_timeout=self._request_timeout,
            )
        except ApiException as exc:
            _logger.warning(
                "event_post_failed",
                policy=policy.key,
                reason=str(reason),
                status=exc.status,
                error=str(exc.reason),
            )
            return
        except (TimeoutError, OSError) as exc:
            _logger.warning("event_post_failed", policy=policy.key, reason=str(reason), error=str(exc))
            return
        _logger.debug("event_posted", policy=policy.key, reason=str(reason), type=str(event_type))
