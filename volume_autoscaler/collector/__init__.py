"""Kubernetes watchers that feed the reconcile queue."""
