"""Prometheus instant-query client and per-URL client registry.

Each client wraps a persistent ``httpx.AsyncClient`` connection pool, so
clients are built once per backend URL and shared by every reconcile cycle
that targets that URL.
"""

from __future__ import annotations

import json
import math
import threading
import time
from typing import Any

import httpx
import structlog

from volume_autoscaler.errors import NoDataError, PrometheusQueryError
from volume_autoscaler.observability.metrics import prometheus_clients, prometheus_query_duration_seconds

_logger = structlog.get_logger(component="prometheus.client")

_DEFAULT_TIMEOUT_S: float = 10.0
_ERROR_BODY_MAX_CHARS: int = 200


class PrometheusClient:
    """Issues PromQL instant queries against ``<base_url>/api/v1/query``.

    The caller is responsible for calling aclose() during shutdown.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def query(self, promql: str) -> float:
        """Execute an instant query and return its single scalar value.

        Raises NoDataError when the result vector is empty and
        PrometheusQueryError for more than one sample or any transport,
        HTTP or payload failure.
        """
        results = await self._query_raw(promql)
        if not results:
            raise NoDataError(f"no results for query: {promql}", query=promql)
        if len(results) > 1:
            raise PrometheusQueryError(f"expected 1 result, got {len(results)} for query: {promql}", query=promql)
        return _parse_value(results[0], promql)

    async def query_multi(self, promql: str, label_name: str) -> dict[str, float]:
        """Execute an instant query and key each sample by one of its labels."""
        results = await self._query_raw(promql)
        out: dict[str, float] = {}
        for item in results:
            metric = item.get("metric") or {}
            key = str(metric.get(label_name, ""))
            out[key] = _parse_value(item, promql)
        return out

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _query_raw(self, promql: str) -> list[dict[str, Any]]:
        start = time.monotonic()
        try:
            response = await self._client.get(f"{self._base_url}/api/v1/query", params={"query": promql})
        except httpx.TimeoutException as exc:
            raise PrometheusQueryError(f"querying prometheus timed out: {exc}", query=promql) from exc
        except httpx.HTTPError as exc:
            raise PrometheusQueryError(f"querying prometheus: {exc}", query=promql) from exc
        finally:
            prometheus_query_duration_seconds.observe(time.monotonic() - start)

        if response.status_code != 200:
            raise PrometheusQueryError(
                f"prometheus returned HTTP {response.status_code}: {response.text[:_ERROR_BODY_MAX_CHARS]}",
                query=promql,
            )

        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise PrometheusQueryError(f"decoding response: {exc}", query=promql) from exc

        if not isinstance(body, dict) or body.get("status") != "success":
            error = body.get("error", "unknown error") if isinstance(body, dict) else "malformed response"
            raise PrometheusQueryError(f"prometheus query failed: {error}", query=promql)

        data = body.get("data") or {}
        result = data.get("result") if isinstance(data, dict) else None
        if not isinstance(result, list):
            raise PrometheusQueryError("prometheus response has no result vector", query=promql)
        return [r for r in result if isinstance(r, dict)]


def _parse_value(sample: dict[str, Any], promql: str) -> float:
    """Extract the float from a ``[<timestamp>, "<value>"]`` pair."""
    value = sample.get("value")
    if not isinstance(value, list) or len(value) != 2 or not isinstance(value[1], str):
        raise PrometheusQueryError(f"value is not a string pair for query: {promql}", query=promql)
    try:
        parsed = float(value[1])
    except ValueError as exc:
        raise PrometheusQueryError(f"value {value[1]!r} is not a number for query: {promql}", query=promql) from exc
    # Prometheus encodes NaN and infinities as strings; none of them is a usable reading.
    if not math.isfinite(parsed):
        raise PrometheusQueryError(f"value {value[1]!r} is not finite for query: {promql}", query=promql)
    return parsed


class PrometheusClientRegistry:
    """One PrometheusClient per backend URL, shared across reconciliations.

    Constructed once at startup and injected into the reconciler. Lookups
    are frequent and inserts rare; both run under a single lock.
    """

    def __init__(
        self,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self._clients: dict[str, PrometheusClient] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> PrometheusClient:
        key = url.rstrip("/")
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = PrometheusClient(key, timeout=self._timeout, transport=self._transport)
                self._clients[key] = client
                prometheus_clients.set(len(self._clients))
                _logger.info("prometheus_client_created", url=key)
            return client

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    async def aclose(self) -> None:
        """Close every cached client. Safe to call more than once."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            prometheus_clients.set(0)
        for client in clients:
            await client.aclose()

    async def stop(self) -> None:
        await self.aclose()
