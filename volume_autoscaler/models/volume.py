"""Snapshot of a PersistentVolumeClaim as read from the API server."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from volume_autoscaler.models.quantity import parse_quantity

# PVC condition types set by the external resizer / kubelet.
CONDITION_RESIZING = "Resizing"
CONDITION_FS_RESIZE_PENDING = "FileSystemResizePending"


@dataclass(frozen=True)
class ClaimCondition:
    type: str
    status: str


@dataclass(frozen=True)
class VolumeClaim:
    """Read-only view of a PVC.

    ``capacity`` is the bound size reported in ``status.capacity`` and is
    authoritative for "current size". ``requested`` is ``spec.resources.requests``,
    the only field the autoscaler writes.
    """

    namespace: str
    name: str
    capacity: int
    requested: int
    storage_class_name: str = ""
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    conditions: tuple[ClaimCondition, ...] = ()

    @property
    def resizing(self) -> ClaimCondition | None:
        """The active resize condition, if any."""
        for cond in self.conditions:
            if cond.type in (CONDITION_RESIZING, CONDITION_FS_RESIZE_PENDING) and cond.status == "True":
                return cond
        return None

    @classmethod
    def from_api(cls, pvc: Any) -> VolumeClaim:
        """Build from a kubernetes_asyncio ``V1PersistentVolumeClaim``."""
        metadata = pvc.metadata
        spec = pvc.spec
        status = pvc.status

        requests: dict[str, str] = {}
        if spec is not None and spec.resources is not None and spec.resources.requests:
            requests = spec.resources.requests
        capacity: dict[str, str] = {}
        if status is not None and status.capacity:
            capacity = status.capacity

        conditions: tuple[ClaimCondition, ...] = ()
        if status is not None and status.conditions:
            conditions = tuple(ClaimCondition(type=str(c.type), status=str(c.status)) for c in status.conditions)

        return cls(
            namespace=str(metadata.namespace or ""),
            name=str(metadata.name or ""),
            capacity=parse_quantity(capacity.get("storage", "0")),
            requested=parse_quantity(requests.get("storage", "0")),
            storage_class_name=str((spec.storage_class_name if spec is not None else "") or ""),
            resource_version=str(metadata.resource_version or ""),
            labels=dict(metadata.labels or {}),
            conditions=conditions,
        )
