"""Pre-expansion safety gates.

Checks run in a fixed order and the first failure wins. A blocked
expansion is an expected outcome, reported through :class:`SafetyVerdict`,
never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from kubernetes_asyncio.client.exceptions import ApiException

from volume_autoscaler.models.duration import format_duration
from volume_autoscaler.models.policy import PVCStatus
from volume_autoscaler.models.quantity import format_quantity
from volume_autoscaler.models.volume import VolumeClaim


class BlockReason(StrEnum):
    """Why an expansion was refused."""

    ALREADY_RESIZING = "AlreadyResizing"
    COOLDOWN = "CooldownNotElapsed"
    MAX_SIZE_REACHED = "MaxSizeReached"
    STORAGE_CLASS_NOT_EXPANDABLE = "StorageClassNotExpandable"
    STORAGE_CLASS_LOOKUP_FAILED = "StorageClassLookupFailed"


@dataclass(frozen=True)
class SafetyVerdict:
    allowed: bool
    reason: BlockReason | None = None
    message: str = ""
    remaining: timedelta | None = None

    @classmethod
    def ok(cls) -> SafetyVerdict:
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: BlockReason, message: str, remaining: timedelta | None = None) -> SafetyVerdict:
        return cls(allowed=False, reason=reason, message=message, remaining=remaining)


class SafetyChecker:
    """Decides whether a PVC may be expanded right now.

    Reads StorageClasses through a kubernetes_asyncio ``StorageV1Api``;
    writes nothing.
    """

    def __init__(self, storage_api: Any, request_timeout: float = 30.0) -> None:
        self._storage = storage_api
        self._request_timeout = request_timeout

    async def check(
        self,
        claim: VolumeClaim,
        pvc_status: PVCStatus,
        max_size: int,
        cooldown: timedelta,
        now: datetime,
    ) -> SafetyVerdict:
        resizing = claim.resizing
        if resizing is not None:
            return SafetyVerdict.block(
                BlockReason.ALREADY_RESIZING,
                f"PVC is already being resized (condition: {resizing.type})",
            )

        if pvc_status.last_scale_time is not None:
            elapsed = now - pvc_status.last_scale_time
            if elapsed < cooldown:
                remaining = cooldown - elapsed
                return SafetyVerdict.block(
                    BlockReason.COOLDOWN,
                    f"cooldown not elapsed ({format_duration(remaining)} remaining)",
                    remaining=remaining,
                )

        if claim.capacity >= max_size:
            return SafetyVerdict.block(
                BlockReason.MAX_SIZE_REACHED,
                f"PVC {claim.namespace}/{claim.name} has reached maxSize {format_quantity(max_size)}",
            )

        if claim.storage_class_name:
            return await self._check_storage_class(claim.storage_class_name)

        return SafetyVerdict.ok()

    async def _check_storage_class(self, name: str) -> SafetyVerdict:
        try:
            storage_class = await self._storage.read_storage_class(name=name, _request_timeout=self._request_timeout)
        except ApiException as exc:
            return SafetyVerdict.block(
                BlockReason.STORAGE_CLASS_LOOKUP_FAILED,
                f"failed to get StorageClass {name}: {exc.status} {exc.reason}",
            )
        if not storage_class.allow_volume_expansion:
            return SafetyVerdict.block(
                BlockReason.STORAGE_CLASS_NOT_EXPANDABLE,
                f"StorageClass {name} does not allow volume expansion",
            )
        return SafetyVerdict.ok()
