"""Reconciler: one full autoscaling cycle for a single VolumeAutoscaler.

Per cycle:
  1. Fetch the policy (404 ends the cycle silently).
  2. Parse spec and target; misconfiguration is a reconcile error.
  3. Resolve target PVCs; none found sets NoPVCsFound and requeues.
  4. Per PVC: query usage, update the status entry, and when usage is at
     or above the threshold run the safety gates, check volume health,
     compute the new size and patch the PVC.
  5. Set the Ready condition and persist status.

Telemetry and patch failures are per-PVC and never abort the cycle. A
status persist failure requeues after a short fixed backoff because the
cycle's decisions were already applied.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from kubernetes_asyncio.client.exceptions import ApiException

from volume_autoscaler.controller.events import EventReason, EventRecorder, EventType
from volume_autoscaler.controller.resolver import TargetResolver
from volume_autoscaler.controller.safety import BlockReason, SafetyChecker
from volume_autoscaler.controller.sizing import calculate_new_size
from volume_autoscaler.controller.status import PolicyStatusTracker, ReadyReason, StatusWriter
from volume_autoscaler.errors import (
    InvalidDurationError,
    InvalidQuantityError,
    InvalidTargetError,
    PrometheusQueryError,
    VolumeNotFoundError,
)
from volume_autoscaler.models.config import ControllerConfig
from volume_autoscaler.models.policy import (
    API_GROUP,
    API_VERSION,
    DEFAULT_PROMETHEUS_URL,
    PLURAL,
    VolumeAutoscaler,
    VolumeAutoscalerStatus,
    parse_target,
)
from volume_autoscaler.models.quantity import format_quantity
from volume_autoscaler.models.volume import VolumeClaim
from volume_autoscaler.observability.logging import get_logger
from volume_autoscaler.observability.metrics import (
    poll_errors_total,
    pvc_usage_percent,
    reconcile_duration_seconds,
    reconcile_total,
    safety_blocks_total,
    scale_events_total,
)
from volume_autoscaler.prometheus import queries
from volume_autoscaler.prometheus.client import PrometheusClient, PrometheusClientRegistry

_logger = get_logger("controller.reconciler")

# Blocks with a dedicated warning event; every other block is reported as ExpansionSkipped.
_BLOCK_EVENTS: dict[BlockReason, EventReason] = {
    BlockReason.MAX_SIZE_REACHED: EventReason.MAX_SIZE_REACHED,
    BlockReason.STORAGE_CLASS_NOT_EXPANDABLE: EventReason.STORAGE_CLASS_NOT_EXPANDABLE,
}


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome handed back to the work queue.

    ``requeue_after`` is in seconds; None means do not requeue. A non-None
    ``error`` asks the queue to retry with backoff.
    """

    requeue_after: float | None = None
    error: Exception | None = None

    @classmethod
    def done(cls) -> ReconcileResult:
        return cls()


@dataclass
class PolicyOutcome:
    """Summary of the most recent cycle for one policy, served by the REST API."""

    key: str
    ready: bool
    reason: str
    message: str
    volumes: int = 0
    expanded: int = 0
    requeue_after: float | None = None
    error: str | None = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class _CycleState:
    """Mutable per-cycle context shared by the per-volume steps."""

    policy: VolumeAutoscaler
    prom: PrometheusClient
    tracker: PolicyStatusTracker
    now: datetime
    queries_ok: bool = True
    expanded: int = 0


def usage_percent(used: float, capacity: float) -> int:
    """Usage as a whole percentage, rounding halves away from zero."""
    return int(math.floor(used / capacity * 100 + 0.5))


class Reconciler:
    """Runs reconcile cycles. Safe to call concurrently for different policies.

    All collaborators are injected; the Prometheus client registry is the
    only state shared between concurrent cycles.
    """

    def __init__(
        self,
        custom_api: Any,
        resolver: TargetResolver,
        safety: SafetyChecker,
        recorder: EventRecorder,
        status_writer: StatusWriter,
        core_api: Any,
        prometheus: PrometheusClientRegistry,
        config: ControllerConfig | None = None,
        default_prometheus_url: str = DEFAULT_PROMETHEUS_URL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._custom = custom_api
        self._resolver = resolver
        self._safety = safety
        self._recorder = recorder
        self._status_writer = status_writer
        self._core = core_api
        self._prometheus = prometheus
        self._config = config or ControllerConfig()
        self._default_prometheus_url = default_prometheus_url
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._outcomes: dict[str, PolicyOutcome] = {}
        # PVC names with an exported usage gauge series, per policy key.
        self._usage_series: dict[str, set[str]] = {}

    def outcomes(self) -> list[PolicyOutcome]:
        return [self._outcomes[k] for k in sorted(self._outcomes)]

    def forget(self, key: str) -> None:
        """Drop everything held for a deleted policy, including its usage gauge series."""
        self._outcomes.pop(key, None)
        self._drop_usage_series(key, keep=())

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one cycle under the configured deadline."""
        start = time.monotonic()
        key = f"{namespace}/{name}"
        structlog.contextvars.bind_contextvars(policy=key)
        try:
            async with asyncio.timeout(self._config.reconcile_timeout_seconds):
                result = await self._reconcile(namespace, name)
        except TimeoutError as exc:
            _logger.error("reconcile_timeout", timeout_s=self._config.reconcile_timeout_seconds)
            reconcile_total.labels(outcome="timeout").inc()
            return ReconcileResult(requeue_after=self._config.error_backoff_seconds, error=exc)
        finally:
            reconcile_duration_seconds.observe(time.monotonic() - start)
            structlog.contextvars.unbind_contextvars("policy")
        reconcile_total.labels(outcome="error" if result.error else "success").inc()
        return result

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        key = f"{namespace}/{name}"
        try:
            raw: dict[str, Any] = await self._custom.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
                _request_timeout=self._config.request_timeout_seconds,
            )
        except ApiException as exc:
            if exc.status == 404:
                _logger.debug("policy_not_found")
                self.forget(key)
                return ReconcileResult.done()
            raise

        now = self._clock()
        try:
            policy = VolumeAutoscaler.from_dict(raw)
        except (InvalidQuantityError, InvalidDurationError, ValueError, TypeError) as exc:
            return await self._misconfigured(raw, ReadyReason.INVALID_SPEC, "invalid_spec", exc, now)

        spec = policy.spec
        poll_interval = spec.poll_interval.total_seconds()

        try:
            target = parse_target(spec.target)
        except InvalidTargetError as exc:
            return await self._misconfigured(raw, ReadyReason.INVALID_TARGET, "invalid_target", exc, now)

        tracker = PolicyStatusTracker(policy.status)
        tracker.status.observed_generation = policy.generation

        try:
            claims = await self._resolver.resolve(policy.namespace, target)
        except (VolumeNotFoundError, ApiException) as exc:
            _logger.warning("resolve_pvcs_failed", error=str(exc))
            poll_errors_total.labels(namespace=namespace, volumeautoscaler=name, reason="resolve_pvcs").inc()
            return await self._no_pvcs(raw, policy, tracker, str(exc), now)

        if not claims:
            _logger.info("no_pvcs_found", target=spec.target)
            return await self._no_pvcs(raw, policy, tracker, "no matching PVCs found", now)

        url = spec.prometheus_url or self._default_prometheus_url
        state = _CycleState(policy=policy, prom=self._prometheus.get(url), tracker=tracker, now=now)
        tracker.mark_polled(policy.generation, now)

        for claim in claims:
            await self._process_volume(state, claim)

        names = [c.name for c in claims]
        tracker.retain(names)
        self._drop_usage_series(key, keep=names)

        if state.queries_ok:
            tracker.set_ready(True, ReadyReason.POLLING, "successfully polling volume metrics", policy.generation, now)
        else:
            tracker.set_ready(
                False, ReadyReason.PROMETHEUS_UNAVAILABLE, "some metrics queries failed", policy.generation, now
            )

        persisted = await self._persist(raw, tracker.status)
        requeue = poll_interval if persisted else self._config.status_retry_seconds
        self._record_outcome(key, tracker.status, len(claims), state.expanded, requeue, None)
        return ReconcileResult(requeue_after=requeue)

    async def _process_volume(self, state: _CycleState, claim: VolumeClaim) -> None:
        policy = state.policy
        spec = policy.spec
        log = _logger.bind(pvc=claim.name, namespace=claim.namespace)

        try:
            used = await state.prom.query(queries.used_bytes(claim.namespace, claim.name))
            capacity = await state.prom.query(queries.capacity_bytes(claim.namespace, claim.name))
        except PrometheusQueryError as exc:
            log.warning("prometheus_query_failed", error=str(exc), query=exc.query)
            poll_errors_total.labels(
                namespace=policy.namespace, volumeautoscaler=policy.name, reason="prometheus_query"
            ).inc()
            state.queries_ok = False
            return

        if capacity <= 0:
            log.info("capacity_not_positive", capacity=capacity)
            return

        percent = usage_percent(used, capacity)
        pvc_usage_percent.labels(namespace=claim.namespace, pvc=claim.name, volumeautoscaler=policy.name).set(percent)
        self._usage_series.setdefault(policy.key, set()).add(claim.name)
        entry = state.tracker.observe(claim, int(used), percent)

        if percent < spec.threshold_percent:
            log.debug("usage_below_threshold", usage=percent, threshold=spec.threshold_percent)
            return

        log.info("usage_exceeds_threshold", usage=percent, threshold=spec.threshold_percent)

        verdict = await self._safety.check(claim, entry, spec.max_size, spec.cooldown_period, state.now)
        if not verdict.allowed:
            assert verdict.reason is not None
            log.info("safety_check_blocked", reason=str(verdict.reason), detail=verdict.message)
            safety_blocks_total.labels(reason=str(verdict.reason)).inc()
            event_reason = _BLOCK_EVENTS.get(verdict.reason)
            if event_reason is not None:
                await self._recorder.record(policy, EventType.WARNING, event_reason, verdict.message)
            else:
                await self._recorder.record(
                    policy,
                    EventType.NORMAL,
                    EventReason.EXPANSION_SKIPPED,
                    f"Skipping expansion of PVC {claim.namespace}/{claim.name}: {verdict.message}",
                )
            return

        if await self._volume_unhealthy(state.prom, claim):
            log.info("volume_unhealthy_skipping_expansion")
            await self._recorder.record(
                policy,
                EventType.WARNING,
                EventReason.VOLUME_UNHEALTHY,
                f"PVC {claim.namespace}/{claim.name} is unhealthy, skipping expansion",
            )
            return

        if spec.inode_threshold_percent > 0:
            await self._check_inodes(state.prom, claim, spec.inode_threshold_percent, log)

        new_size = calculate_new_size(claim.capacity, spec.increase_percent, spec.increase_minimum, spec.max_size)
        if new_size <= claim.capacity or new_size <= claim.requested:
            log.info(
                "expansion_not_needed",
                capacity=format_quantity(claim.capacity),
                requested=format_quantity(claim.requested),
                target=format_quantity(new_size),
            )
            return

        await self._expand(state, claim, new_size, percent, log)

    async def _expand(
        self,
        state: _CycleState,
        claim: VolumeClaim,
        new_size: int,
        percent: int,
        log: Any,
    ) -> None:
        policy = state.policy
        from_size = format_quantity(claim.capacity)
        to_size = format_quantity(new_size)
        log.info("expanding_pvc", from_size=from_size, to_size=to_size)

        body = {
            "metadata": {"resourceVersion": claim.resource_version},
            "spec": {"resources": {"requests": {"storage": to_size}}},
        }
        try:
            await self._core.patch_namespaced_persistent_volume_claim(
                name=claim.name,
                namespace=claim.namespace,
                body=body,
                _content_type="application/merge-patch+json",
                _request_timeout=self._config.request_timeout_seconds,
            )
        except ApiException as exc:
            # 409 means the PVC changed since it was read; next cycle re-reads it.
            log.warning("patch_pvc_failed", status=exc.status, error=str(exc.reason), conflict=exc.status == 409)
            await self._recorder.record(
                policy,
                EventType.WARNING,
                EventReason.EXPAND_FAILED,
                f"Failed to expand PVC {claim.namespace}/{claim.name}: {exc.status} {exc.reason}",
            )
            poll_errors_total.labels(namespace=policy.namespace, volumeautoscaler=policy.name, reason="patch_pvc").inc()
            return

        await self._recorder.record(
            policy,
            EventType.NORMAL,
            EventReason.EXPANDED,
            f"Expanded PVC {claim.namespace}/{claim.name} from {from_size} to {to_size} (usage: {percent}%)",
        )
        scale_events_total.labels(namespace=claim.namespace, pvc=claim.name, volumeautoscaler=policy.name).inc()
        state.tracker.record_scale(claim.name, new_size, state.now)
        state.expanded += 1

    async def _volume_unhealthy(self, prom: PrometheusClient, claim: VolumeClaim) -> bool:
        """Health is an optional kubelet signal; a failed query counts as healthy."""
        try:
            abnormal = await prom.query(queries.health_abnormal(claim.namespace, claim.name))
        except PrometheusQueryError:
            return False
        return abnormal > 0

    async def _check_inodes(self, prom: PrometheusClient, claim: VolumeClaim, threshold: int, log: Any) -> None:
        """Log inode pressure. Expanding capacity does not add inodes on most filesystems."""
        try:
            used = await prom.query(queries.inodes_used(claim.namespace, claim.name))
            total = await prom.query(queries.inodes(claim.namespace, claim.name))
        except PrometheusQueryError as exc:
            log.debug("inode_query_failed", error=str(exc))
            return
        if total <= 0:
            return
        inode_percent = usage_percent(used, total)
        if inode_percent >= threshold:
            log.info("inode_usage_exceeds_threshold", inode_usage=inode_percent, threshold=threshold)

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------

    async def _no_pvcs(
        self,
        raw: dict[str, Any],
        policy: VolumeAutoscaler,
        tracker: PolicyStatusTracker,
        message: str,
        now: datetime,
    ) -> ReconcileResult:
        tracker.set_ready(False, ReadyReason.NO_PVCS_FOUND, message, policy.generation, now)
        self._drop_usage_series(policy.key, keep=())
        poll_interval = policy.spec.poll_interval.total_seconds()
        persisted = await self._persist(raw, tracker.status)
        requeue = poll_interval if persisted else self._config.status_retry_seconds
        self._record_outcome(policy.key, tracker.status, 0, 0, requeue, None)
        return ReconcileResult(requeue_after=requeue)

    async def _misconfigured(
        self,
        raw: dict[str, Any],
        reason: ReadyReason,
        error_label: str,
        exc: Exception,
        now: datetime,
    ) -> ReconcileResult:
        metadata = raw.get("metadata") or {}
        namespace = str(metadata.get("namespace", ""))
        name = str(metadata.get("name", ""))
        generation = int(metadata.get("generation") or 0)
        _logger.error("policy_misconfigured", reason=str(reason), error=str(exc))
        poll_errors_total.labels(namespace=namespace, volumeautoscaler=name, reason=error_label).inc()

        tracker = PolicyStatusTracker(VolumeAutoscalerStatus.from_dict(raw.get("status")))
        tracker.status.observed_generation = generation
        tracker.set_ready(False, reason, str(exc), generation, now)
        await self._persist(raw, tracker.status)

        backoff = self._config.error_backoff_seconds
        self._record_outcome(f"{namespace}/{name}", tracker.status, 0, 0, backoff, str(exc))
        return ReconcileResult(requeue_after=backoff, error=exc)

    def _drop_usage_series(self, key: str, keep: Iterable[str]) -> None:
        """Remove usage gauge series for PVCs of *key* that are not in *keep*."""
        series = self._usage_series.get(key)
        if not series:
            return
        namespace, _, name = key.partition("/")
        stale = series - set(keep)
        for pvc in sorted(stale):
            with contextlib.suppress(KeyError):
                pvc_usage_percent.remove(namespace, pvc, name)
        series -= stale
        if not series:
            del self._usage_series[key]

    async def _persist(self, raw: dict[str, Any], status: VolumeAutoscalerStatus) -> bool:
        try:
            await self._status_writer.persist(raw, status)
        except ApiException as exc:
            _logger.error("status_update_failed", status=exc.status, error=str(exc.reason))
        except (TimeoutError, OSError) as exc:
            _logger.error("status_update_failed", error=str(exc))
        else:
            return True
        metadata = raw.get("metadata") or {}
        poll_errors_total.labels(
            namespace=str(metadata.get("namespace", "")),
            volumeautoscaler=str(metadata.get("name", "")),
            reason="status_update",
        ).inc()
        return False

    def _record_outcome(
        self,
        key: str,
        status: VolumeAutoscalerStatus,
        volumes: int,
        expanded: int,
        requeue_after: float | None,
        error: str | None,
    ) -> None:
        ready = status.get_condition("Ready")
        self._outcomes[key] = PolicyOutcome(
            key=key,
            ready=ready is not None and ready.status == "True",
            reason=ready.reason if ready else "",
            message=ready.message if ready else "",
            volumes=volumes,
            expanded=expanded,
            requeue_after=requeue_after,
            error=error,
            finished_at=self._clock(),
        )

