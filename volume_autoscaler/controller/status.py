"""Status bookkeeping for a VolumeAutoscaler.

The tracker works on a copy of the previous status so that an aborted
cycle leaves the stored status exactly as it was; only
:meth:`StatusWriter.persist` publishes the new one.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum
from typing import Any

from volume_autoscaler.models.policy import (
    API_GROUP,
    API_VERSION,
    CONDITION_READY,
    PLURAL,
    Condition,
    PVCStatus,
    VolumeAutoscalerStatus,
)
from volume_autoscaler.models.volume import VolumeClaim


class ReadyReason(StrEnum):
    """Reasons carried by the ``Ready`` condition."""

    POLLING = "Polling"
    PROMETHEUS_UNAVAILABLE = "PrometheusUnavailable"
    NO_PVCS_FOUND = "NoPVCsFound"
    INVALID_TARGET = "InvalidTarget"
    INVALID_SPEC = "InvalidSpec"


def set_condition(
    conditions: list[Condition],
    cond_type: str,
    status: bool,
    reason: str,
    message: str,
    generation: int,
    now: datetime,
) -> Condition:
    """Add or update a condition in place.

    ``last_transition_time`` only moves when the status value flips.
    """
    status_str = "True" if status else "False"
    for cond in conditions:
        if cond.type == cond_type:
            if cond.status != status_str:
                cond.status = status_str
                cond.last_transition_time = now
            cond.reason = reason
            cond.message = message
            cond.observed_generation = generation
            return cond
    new = Condition(
        type=cond_type,
        status=status_str,
        reason=reason,
        message=message,
        last_transition_time=now,
        observed_generation=generation,
    )
    conditions.append(new)
    return new


class PolicyStatusTracker:
    """Incremental builder for the next VolumeAutoscalerStatus.

    Per-PVC entries are keyed by name. An entry that is not touched this
    cycle keeps its previous values, including cooldown bookkeeping.
    """

    def __init__(self, previous: VolumeAutoscalerStatus) -> None:
        self._status = copy.deepcopy(previous)

    @property
    def status(self) -> VolumeAutoscalerStatus:
        return self._status

    def previous_entry(self, name: str) -> PVCStatus | None:
        return self._status.pvcs.get(name)

    def observe(self, claim: VolumeClaim, usage_bytes: int, usage_percent: int) -> PVCStatus:
        """Record fresh usage for *claim*, carrying last-scale fields forward."""
        previous = self._status.pvcs.get(claim.name)
        entry = PVCStatus(
            name=claim.name,
            current_size=claim.capacity,
            usage_bytes=usage_bytes,
            usage_percent=usage_percent,
            last_scale_time=previous.last_scale_time if previous else None,
            last_scale_size=previous.last_scale_size if previous else None,
        )
        self._status.pvcs[claim.name] = entry
        return entry

    def record_scale(self, name: str, new_size: int, now: datetime) -> None:
        entry = self._status.pvcs[name]
        entry.last_scale_time = now
        entry.last_scale_size = new_size
        self._status.total_scale_events += 1

    def retain(self, names: Iterable[str]) -> None:
        """Drop entries for PVCs the policy no longer governs."""
        keep = set(names)
        for name in list(self._status.pvcs):
            if name not in keep:
                del self._status.pvcs[name]

    def mark_polled(self, generation: int, now: datetime) -> None:
        self._status.last_poll_time = now
        self._status.observed_generation = generation

    def set_ready(self, status: bool, reason: ReadyReason, message: str, generation: int, now: datetime) -> None:
        set_condition(self._status.conditions, CONDITION_READY, status, str(reason), message, generation, now)


class StatusWriter:
    """Writes the status subresource with the object's last-seen resourceVersion.

    A stale resourceVersion makes the API server answer 409; the caller
    treats that like any other persist failure.
    """

    def __init__(self, custom_api: Any, request_timeout: float = 30.0) -> None:
        self._custom = custom_api
        self._request_timeout = request_timeout

    async def persist(self, raw: dict[str, Any], status: VolumeAutoscalerStatus) -> dict[str, Any]:
        metadata = raw.get("metadata") or {}
        body = dict(raw)
        body["status"] = status.to_dict()
        result: dict[str, Any] = await self._custom.replace_namespaced_custom_object_status(
            group=API_GROUP,
            version=API_VERSION,
            namespace=metadata.get("namespace", ""),
            plural=PLURAL,
            name=metadata.get("name", ""),
            body=body,
            _request_timeout=self._request_timeout,
        )
        return result
