"""VolumeAutoscaler custom resource: spec, status and target variants.

Objects are parsed from and rendered to the camelCase JSON form the API
server stores. Per-PVC status is held as a dict keyed by PVC name and only
turned into a list in :meth:`VolumeAutoscalerStatus.to_dict`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from volume_autoscaler.errors import InvalidDurationError, InvalidQuantityError, InvalidTargetError
from volume_autoscaler.models.duration import format_duration, parse_duration
from volume_autoscaler.models.quantity import format_quantity, parse_quantity

API_GROUP = "autoscaling.volume-autoscaler.io"
API_VERSION = "v1alpha1"
PLURAL = "volumeautoscalers"
KIND = "VolumeAutoscaler"

CONDITION_READY = "Ready"

DEFAULT_THRESHOLD_PERCENT = 80
DEFAULT_INCREASE_PERCENT = 20
DEFAULT_POLL_INTERVAL = timedelta(seconds=60)
DEFAULT_COOLDOWN_PERIOD = timedelta(seconds=300)
DEFAULT_PROMETHEUS_URL = "http://prometheus.monitoring.svc.cluster.local:9090"

_SELECTOR_OPERATORS = frozenset({"In", "NotIn", "Exists", "DoesNotExist"})


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def format_time(value: datetime) -> str:
    """Render a datetime as an RFC 3339 UTC timestamp (``metav1.Time``)."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ---------------------------------------------------------------------------
# Target
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LabelSelectorRequirement:
    key: str
    operator: str
    values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.operator not in _SELECTOR_OPERATORS:
            raise InvalidTargetError(f"invalid label selector: unknown operator {self.operator!r}")
        if self.operator in ("In", "NotIn") and not self.values:
            raise InvalidTargetError(f"invalid label selector: operator {self.operator} requires values")
        if self.operator in ("Exists", "DoesNotExist") and self.values:
            raise InvalidTargetError(f"invalid label selector: operator {self.operator} takes no values")

    def render(self) -> str:
        if self.operator == "Exists":
            return self.key
        if self.operator == "DoesNotExist":
            return f"!{self.key}"
        op = "in" if self.operator == "In" else "notin"
        return f"{self.key} {op} ({','.join(sorted(self.values))})"


@dataclass(frozen=True)
class LabelSelector:
    """A ``metav1.LabelSelector``. An empty selector matches every PVC."""

    match_labels: tuple[tuple[str, str], ...] = ()
    match_expressions: tuple[LabelSelectorRequirement, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LabelSelector:
        labels = raw.get("matchLabels") or {}
        expressions = raw.get("matchExpressions") or []
        if not isinstance(labels, dict) or not isinstance(expressions, list):
            raise InvalidTargetError("invalid label selector: malformed matchLabels or matchExpressions")
        reqs = tuple(
            LabelSelectorRequirement(
                key=str(expr.get("key", "")),
                operator=str(expr.get("operator", "")),
                values=tuple(str(v) for v in expr.get("values") or ()),
            )
            for expr in expressions
        )
        return cls(
            match_labels=tuple(sorted((str(k), str(v)) for k, v in labels.items())),
            match_expressions=reqs,
        )

    def to_selector_string(self) -> str:
        """Render in the API server's ``labelSelector`` query syntax."""
        parts = [f"{k}={v}" for k, v in self.match_labels]
        parts.extend(req.render() for req in self.match_expressions)
        return ",".join(parts)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.match_labels:
            out["matchLabels"] = dict(self.match_labels)
        if self.match_expressions:
            out["matchExpressions"] = [
                {"key": r.key, "operator": r.operator, **({"values": list(r.values)} if r.values else {})}
                for r in self.match_expressions
            ]
        return out


@dataclass(frozen=True)
class PVCNameTarget:
    """Targets a single PVC by name in the policy's namespace."""

    name: str

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidTargetError("pvcName must not be empty")


@dataclass(frozen=True)
class SelectorTarget:
    """Targets every PVC in the policy's namespace matching a label selector."""

    selector: LabelSelector


Target = PVCNameTarget | SelectorTarget


def parse_target(raw: dict[str, Any] | None) -> Target:
    """Build a Target from ``spec.target``.

    Raises InvalidTargetError unless exactly one of pvcName and selector is set.
    """
    raw = raw or {}
    name = raw.get("pvcName") or ""
    selector = raw.get("selector")
    if name and selector is not None:
        raise InvalidTargetError("target must specify only one of pvcName or selector")
    if name:
        return PVCNameTarget(name=str(name))
    if selector is not None:
        if not isinstance(selector, dict):
            raise InvalidTargetError("invalid label selector: expected an object")
        return SelectorTarget(selector=LabelSelector.from_dict(selector))
    raise InvalidTargetError("target must specify either pvcName or selector")


# ---------------------------------------------------------------------------
# Spec
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VolumeAutoscalerSpec:
    """Desired state. Sizes are integer bytes.

    ``target`` is kept in its raw form; :func:`parse_target` is applied by
    the reconciler so a bad target surfaces as a condition, not a parse crash.
    """

    target: dict[str, Any]
    max_size: int
    threshold_percent: int = DEFAULT_THRESHOLD_PERCENT
    increase_percent: int = DEFAULT_INCREASE_PERCENT
    increase_minimum: int | None = None
    poll_interval: timedelta = DEFAULT_POLL_INTERVAL
    cooldown_period: timedelta = DEFAULT_COOLDOWN_PERIOD
    inode_threshold_percent: int = 0
    prometheus_url: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> VolumeAutoscalerSpec:
        if raw.get("maxSize") in (None, ""):
            raise InvalidQuantityError("maxSize is required")
        increase_minimum = raw.get("increaseMinimum")
        poll = raw.get("pollInterval")
        cooldown = raw.get("cooldownPeriod")
        poll_interval = parse_duration(poll) if poll is not None else DEFAULT_POLL_INTERVAL
        if poll_interval <= timedelta(0):
            raise InvalidDurationError(f"pollInterval must be positive, got {poll!r}")
        return cls(
            target=dict(raw.get("target") or {}),
            max_size=parse_quantity(raw["maxSize"]),
            # Zero means unset, as with the CRD's omitempty integers.
            threshold_percent=int(raw.get("thresholdPercent") or DEFAULT_THRESHOLD_PERCENT),
            increase_percent=int(raw.get("increasePercent") or DEFAULT_INCREASE_PERCENT),
            increase_minimum=parse_quantity(increase_minimum) if increase_minimum is not None else None,
            poll_interval=poll_interval,
            cooldown_period=parse_duration(cooldown) if cooldown is not None else DEFAULT_COOLDOWN_PERIOD,
            inode_threshold_percent=int(raw.get("inodeThresholdPercent") or 0),
            prometheus_url=str(raw.get("prometheusURL") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "target": self.target,
            "maxSize": format_quantity(self.max_size),
            "thresholdPercent": self.threshold_percent,
            "increasePercent": self.increase_percent,
            "pollInterval": format_duration(self.poll_interval),
            "cooldownPeriod": format_duration(self.cooldown_period),
        }
        if self.increase_minimum is not None:
            out["increaseMinimum"] = format_quantity(self.increase_minimum)
        if self.inode_threshold_percent:
            out["inodeThresholdPercent"] = self.inode_threshold_percent
        if self.prometheus_url:
            out["prometheusURL"] = self.prometheus_url
        return out


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


@dataclass
class Condition:
    type: str
    status: str
    reason: str
    message: str
    last_transition_time: datetime
    observed_generation: int = 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Condition:
        return cls(
            type=str(raw.get("type", "")),
            status=str(raw.get("status", "Unknown")),
            reason=str(raw.get("reason", "")),
            message=str(raw.get("message", "")),
            last_transition_time=parse_time(raw.get("lastTransitionTime")) or datetime.now(tz=UTC),
            observed_generation=int(raw.get("observedGeneration") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time),
            "observedGeneration": self.observed_generation,
        }


@dataclass
class PVCStatus:
    """Observed state of one governed PVC."""

    name: str
    current_size: int
    usage_bytes: int = 0
    usage_percent: int = 0
    last_scale_time: datetime | None = None
    last_scale_size: int | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PVCStatus:
        last_size = raw.get("lastScaleSize")
        return cls(
            name=str(raw["name"]),
            current_size=parse_quantity(raw.get("currentSize") or 0),
            usage_bytes=int(raw.get("usageBytes") or 0),
            usage_percent=int(raw.get("usagePercent") or 0),
            last_scale_time=parse_time(raw.get("lastScaleTime")),
            last_scale_size=parse_quantity(last_size) if last_size else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "currentSize": format_quantity(self.current_size),
        }
        if self.usage_bytes:
            out["usageBytes"] = self.usage_bytes
        if self.usage_percent:
            out["usagePercent"] = self.usage_percent
        if self.last_scale_time is not None:
            out["lastScaleTime"] = format_time(self.last_scale_time)
        if self.last_scale_size is not None:
            out["lastScaleSize"] = format_quantity(self.last_scale_size)
        return out


@dataclass
class VolumeAutoscalerStatus:
    conditions: list[Condition] = field(default_factory=list)
    last_poll_time: datetime | None = None
    pvcs: dict[str, PVCStatus] = field(default_factory=dict)
    total_scale_events: int = 0
    observed_generation: int = 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> VolumeAutoscalerStatus:
        raw = raw or {}
        pvcs: dict[str, PVCStatus] = {}
        for entry in raw.get("pvcs") or []:
            if isinstance(entry, dict) and entry.get("name"):
                parsed = PVCStatus.from_dict(entry)
                pvcs[parsed.name] = parsed
        return cls(
            conditions=[Condition.from_dict(c) for c in raw.get("conditions") or [] if isinstance(c, dict)],
            last_poll_time=parse_time(raw.get("lastPollTime")),
            pvcs=pvcs,
            total_scale_events=int(raw.get("totalScaleEvents") or 0),
            observed_generation=int(raw.get("observedGeneration") or 0),
        )

    def get_condition(self, cond_type: str) -> Condition | None:
        for cond in self.conditions:
            if cond.type == cond_type:
                return cond
        return None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "conditions": [c.to_dict() for c in self.conditions],
            "pvcs": [self.pvcs[name].to_dict() for name in sorted(self.pvcs)],
            "totalScaleEvents": self.total_scale_events,
            "observedGeneration": self.observed_generation,
        }
        if self.last_poll_time is not None:
            out["lastPollTime"] = format_time(self.last_poll_time)
        return out


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@dataclass
class VolumeAutoscaler:
    namespace: str
    name: str
    spec: VolumeAutoscalerSpec
    status: VolumeAutoscalerStatus = field(default_factory=VolumeAutoscalerStatus)
    generation: int = 0
    resource_version: str = ""
    uid: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> VolumeAutoscaler:
        """Parse a raw custom object.

        Raises InvalidQuantityError / InvalidDurationError on malformed spec values.
        """
        metadata = raw.get("metadata") or {}
        return cls(
            namespace=str(metadata.get("namespace", "")),
            name=str(metadata.get("name", "")),
            spec=VolumeAutoscalerSpec.from_dict(raw.get("spec") or {}),
            status=VolumeAutoscalerStatus.from_dict(raw.get("status")),
            generation=int(metadata.get("generation") or 0),
            resource_version=str(metadata.get("resourceVersion", "")),
            uid=str(metadata.get("uid", "")),
        )
