"""Process-level configuration dataclasses, populated by :func:`volume_autoscaler.config.load_config`."""

from __future__ import annotations

from dataclasses import dataclass, field

from volume_autoscaler.models.policy import DEFAULT_PROMETHEUS_URL


@dataclass(frozen=True)
class LogConfig:
    level: str = "info"


@dataclass(frozen=True)
class APIConfig:
    port: int = 8080


@dataclass(frozen=True)
class PrometheusConfig:
    default_url: str = DEFAULT_PROMETHEUS_URL
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class ControllerConfig:
    """Work queue and reconcile timing."""

    workers: int = 4
    watch_namespace: str = ""  # empty = all namespaces
    reconcile_timeout_seconds: float = 120.0
    request_timeout_seconds: float = 30.0
    status_retry_seconds: float = 30.0
    error_backoff_seconds: float = 30.0


@dataclass(frozen=True)
class AutoscalerConfig:
    log: LogConfig = field(default_factory=LogConfig)
    api: APIConfig = field(default_factory=APIConfig)
    prometheus: PrometheusConfig = field(default_factory=PrometheusConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
