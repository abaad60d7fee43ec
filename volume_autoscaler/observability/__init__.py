"""Logging and Prometheus metrics for the autoscaler process."""
