"""volume-autoscaler - in-place PersistentVolumeClaim expansion for Kubernetes."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("volume-autoscaler")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
