"""Tests for volume_autoscaler.controller.status."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from volume_autoscaler.controller.status import PolicyStatusTracker, ReadyReason, StatusWriter, set_condition
from volume_autoscaler.models.policy import API_GROUP, PLURAL, Condition, PVCStatus, VolumeAutoscalerStatus
from volume_autoscaler.models.quantity import GIB
from volume_autoscaler.models.volume import VolumeClaim

_T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
_T1 = _T0 + timedelta(minutes=1)


def _claim(name: str, capacity: int = 10 * GIB) -> VolumeClaim:
    return VolumeClaim(namespace="db", name=name, capacity=capacity, requested=capacity)


class TestSetCondition:
    def test_adds_new_condition(self) -> None:
        conditions: list[Condition] = []
        set_condition(conditions, "Ready", True, "Polling", "ok", 2, _T0)
        assert len(conditions) == 1
        assert conditions[0].status == "True"
        assert conditions[0].observed_generation == 2
        assert conditions[0].last_transition_time == _T0

    def test_same_status_keeps_transition_time(self) -> None:
        conditions: list[Condition] = []
        set_condition(conditions, "Ready", True, "Polling", "ok", 1, _T0)
        set_condition(conditions, "Ready", True, "Polling", "still ok", 2, _T1)
        assert conditions[0].last_transition_time == _T0
        assert conditions[0].message == "still ok"
        assert conditions[0].observed_generation == 2

    def test_flip_moves_transition_time(self) -> None:
        conditions: list[Condition] = []
        set_condition(conditions, "Ready", True, "Polling", "ok", 1, _T0)
        set_condition(conditions, "Ready", False, "NoPVCsFound", "none", 1, _T1)
        assert len(conditions) == 1
        assert conditions[0].status == "False"
        assert conditions[0].reason == "NoPVCsFound"
        assert conditions[0].last_transition_time == _T1


class TestPolicyStatusTracker:
    def test_does_not_mutate_previous_status(self) -> None:
        previous = VolumeAutoscalerStatus(pvcs={"a": PVCStatus(name="a", current_size=GIB)})
        tracker = PolicyStatusTracker(previous)
        tracker.observe(_claim("a"), 5, 50)
        tracker.record_scale("a", 12 * GIB, _T0)
        assert previous.pvcs["a"].usage_percent == 0
        assert previous.pvcs["a"].last_scale_time is None
        assert previous.total_scale_events == 0

    def test_first_sighting_creates_entry(self) -> None:
        tracker = PolicyStatusTracker(VolumeAutoscalerStatus())
        assert tracker.previous_entry("a") is None
        entry = tracker.observe(_claim("a"), 5 * GIB, 50)
        assert entry.current_size == 10 * GIB
        assert entry.usage_bytes == 5 * GIB
        assert entry.usage_percent == 50
        assert entry.last_scale_time is None

    def test_observe_carries_last_scale_forward(self) -> None:
        previous = VolumeAutoscalerStatus(
            pvcs={"a": PVCStatus(name="a", current_size=10 * GIB, last_scale_time=_T0, last_scale_size=10 * GIB)}
        )
        tracker = PolicyStatusTracker(previous)
        entry = tracker.observe(_claim("a", 12 * GIB), GIB, 8)
        assert entry.current_size == 12 * GIB
        assert entry.last_scale_time == _T0
        assert entry.last_scale_size == 10 * GIB

    def test_record_scale(self) -> None:
        tracker = PolicyStatusTracker(VolumeAutoscalerStatus(total_scale_events=2))
        tracker.observe(_claim("a"), 9 * GIB, 90)
        tracker.record_scale("a", 12 * GIB, _T1)
        assert tracker.status.pvcs["a"].last_scale_time == _T1
        assert tracker.status.pvcs["a"].last_scale_size == 12 * GIB
        assert tracker.status.total_scale_events == 3

    def test_retain_drops_ungoverned_entries(self) -> None:
        previous = VolumeAutoscalerStatus(
            pvcs={n: PVCStatus(name=n, current_size=GIB) for n in ("a", "b", "c")}
        )
        tracker = PolicyStatusTracker(previous)
        tracker.retain(["a", "c"])
        assert set(tracker.status.pvcs) == {"a", "c"}

    def test_mark_polled_and_ready(self) -> None:
        tracker = PolicyStatusTracker(VolumeAutoscalerStatus())
        tracker.mark_polled(3, _T0)
        tracker.set_ready(False, ReadyReason.PROMETHEUS_UNAVAILABLE, "down", 3, _T0)
        status = tracker.status
        assert status.last_poll_time == _T0
        assert status.observed_generation == 3
        ready = status.get_condition("Ready")
        assert ready is not None
        assert ready.reason == "PrometheusUnavailable"
        assert ready.status == "False"


class TestStatusWriter:
    async def test_replaces_status_subresource_with_last_seen_object(self) -> None:
        custom = MagicMock()
        custom.replace_namespaced_custom_object_status = AsyncMock(return_value={})
        writer = StatusWriter(custom, request_timeout=7.0)
        raw = {"metadata": {"namespace": "db", "name": "pg", "resourceVersion": "41"}, "spec": {}}
        status = VolumeAutoscalerStatus(total_scale_events=1)

        await writer.persist(raw, status)

        kwargs = custom.replace_namespaced_custom_object_status.call_args.kwargs
        assert kwargs["group"] == API_GROUP
        assert kwargs["plural"] == PLURAL
        assert kwargs["namespace"] == "db"
        assert kwargs["name"] == "pg"
        assert kwargs["_request_timeout"] == 7.0
        assert kwargs["body"]["metadata"]["resourceVersion"] == "41"
        assert kwargs["body"]["status"]["totalScaleEvents"] == 1
        assert "status" not in raw

    async def test_replace_body_omits_pruned_entries(self) -> None:
        custom = MagicMock()
        custom.replace_namespaced_custom_object_status = AsyncMock(return_value={})
        custom.patch_namespaced_custom_object_status = AsyncMock()
        raw = {
            "metadata": {"namespace": "db", "name": "pg", "resourceVersion": "41"},
            "status": {"pvcs": [{"name": "old", "currentSize": "1Gi"}, {"name": "data", "currentSize": "10Gi"}]},
        }
        tracker = PolicyStatusTracker(VolumeAutoscalerStatus.from_dict(raw["status"]))
        tracker.retain(["data"])

        await StatusWriter(custom).persist(raw, tracker.status)

        custom.patch_namespaced_custom_object_status.assert_not_called()
        body = custom.replace_namespaced_custom_object_status.call_args.kwargs["body"]
        assert [p["name"] for p in body["status"]["pvcs"]] == ["data"]
