"""Environment-variable configuration loading.

Every setting is read from a ``VOLUME_AUTOSCALER_*`` variable. Numeric
settings are clamped to a safe range rather than rejected; log level is
validated and rejected with ValueError.
"""

from __future__ import annotations

import os

from volume_autoscaler.models.config import (
    APIConfig,
    AutoscalerConfig,
    ControllerConfig,
    LogConfig,
    PrometheusConfig,
)

_PREFIX = "VOLUME_AUTOSCALER_"
_VALID_LOG_LEVELS = frozenset({"debug", "info", "warning", "error"})


def _env(name: str, default: str) -> str:
    return os.environ.get(_PREFIX + name, default).strip()


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _int_env(name: str, default: int, lo: int, hi: int) -> int:
    raw = _env(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {_PREFIX}{name}: {raw!r}") from exc
    return int(_clamp(value, lo, hi))


def _float_env(name: str, default: float, lo: float, hi: float) -> float:
    raw = _env(name, str(default))
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid number for {_PREFIX}{name}: {raw!r}") from exc
    return _clamp(value, lo, hi)


def load_config() -> AutoscalerConfig:
    """Build an AutoscalerConfig from the environment.

    Raises ValueError on an unknown log level or a non-numeric number.
    """
    level = _env("LOG_LEVEL", "info").lower()
    if level not in _VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level!r}. Expected one of {sorted(_VALID_LOG_LEVELS)}.")

    return AutoscalerConfig(
        log=LogConfig(level=level),
        api=APIConfig(port=_int_env("API_PORT", 8080, 1024, 65535)),
        prometheus=PrometheusConfig(
            default_url=_env("PROMETHEUS_URL", PrometheusConfig.default_url).rstrip("/"),
            timeout_seconds=_float_env("PROMETHEUS_TIMEOUT", 10.0, 1.0, 60.0),
        ),
        controller=ControllerConfig(
            workers=_int_env("WORKERS", 4, 1, 32),
            watch_namespace=_env("WATCH_NAMESPACE", ""),
            reconcile_timeout_seconds=_float_env("RECONCILE_TIMEOUT", 120.0, 10.0, 600.0),
            request_timeout_seconds=_float_env("REQUEST_TIMEOUT", 30.0, 1.0, 120.0),
            status_retry_seconds=_float_env("STATUS_RETRY_BACKOFF", 30.0, 1.0, 300.0),
            error_backoff_seconds=_float_env("ERROR_BACKOFF", 30.0, 1.0, 600.0),
        ),
    )
