"""Exception hierarchy for the volume autoscaler."""

from __future__ import annotations


class AutoscalerError(Exception):
    """Base class for all autoscaler errors."""


class InvalidTargetError(AutoscalerError):
    """Raised when a policy target sets neither or both of pvcName and selector."""


class VolumeNotFoundError(AutoscalerError):
    """Raised when a PVC named by a policy target does not exist."""

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"PersistentVolumeClaim {namespace}/{name} not found")
        self.namespace = namespace
        self.name = name


class InvalidQuantityError(AutoscalerError, ValueError):
    """Raised when a Kubernetes quantity string cannot be parsed."""


class InvalidDurationError(AutoscalerError, ValueError):
    """Raised when a duration string cannot be parsed."""


class PrometheusQueryError(AutoscalerError):
    """Raised when an instant query fails or returns an unusable result."""

    def __init__(self, message: str, query: str = "") -> None:
        super().__init__(message)
        self.query = query


class NoDataError(PrometheusQueryError):
    """Raised when an instant query returns an empty result set.

    Never defaulted to zero: an empty vector usually means the kubelet stats
    are not being scraped, and 0% used would hide that.
    """
