"""Prometheus HTTP API access for kubelet volume statistics."""

from volume_autoscaler.prometheus.client import PrometheusClient, PrometheusClientRegistry

__all__ = ["PrometheusClient", "PrometheusClientRegistry"]
