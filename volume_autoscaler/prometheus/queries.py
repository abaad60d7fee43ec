"""PromQL expressions for kubelet volume statistics."""

from __future__ import annotations

USED_BYTES = "kubelet_volume_stats_used_bytes"
CAPACITY_BYTES = "kubelet_volume_stats_capacity_bytes"
HEALTH_ABNORMAL = "kubelet_volume_stats_health_abnormal"
INODES = "kubelet_volume_stats_inodes"
INODES_USED = "kubelet_volume_stats_inodes_used"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def volume_query(metric: str, namespace: str, pvc: str) -> str:
    """Select ``metric`` for one PVC, e.g. ``used_bytes{namespace="db",persistentvolumeclaim="data-0"}``."""
    return f'{metric}{{namespace="{_escape(namespace)}",persistentvolumeclaim="{_escape(pvc)}"}}'


def used_bytes(namespace: str, pvc: str) -> str:
    return volume_query(USED_BYTES, namespace, pvc)


def capacity_bytes(namespace: str, pvc: str) -> str:
    return volume_query(CAPACITY_BYTES, namespace, pvc)


def health_abnormal(namespace: str, pvc: str) -> str:
    return volume_query(HEALTH_ABNORMAL, namespace, pvc)


def inodes(namespace: str, pvc: str) -> str:
    return volume_query(INODES, namespace, pvc)


def inodes_used(namespace: str, pvc: str) -> str:
    return volume_query(INODES_USED, namespace, pvc)
