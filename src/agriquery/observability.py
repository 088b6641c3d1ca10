"""Lightweight metrics instrumentation with optional Prometheus export."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter as PromCounter,
    Gauge as PromGauge,
    Histogram as PromHistogram,
    generate_latest,
)


_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")


class MetricsRecorder:
    """Emit structured metrics via logging and (optionally) Prometheus."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "agriquery",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "agriquery"
        self._logger = logger or logging.getLogger("agriquery.metrics")
        self._prometheus_enabled = prometheus_enabled
        if registry is not None:
            self._prom_registry: CollectorRegistry | None = registry
        else:
            self._prom_registry = CollectorRegistry() if prometheus_enabled else None
        self._prom_metrics: dict[Tuple[str, str, Tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._prom_registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._prom_registry)  # type: ignore[arg-type]

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        value = int(value)
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        if self.prometheus_enabled:
            self._prom_metric("counter", metric, clean_tags).inc(float(max(value, 0)))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        """Set the value of a gauge metric."""

        if not self._enabled:
            return
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        if self.prometheus_enabled:
            self._prom_metric("gauge", metric, clean_tags).set(float(value))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric, recording milliseconds to logs."""

        if not self._enabled:
            return
        duration_ms = max(duration_seconds * 1000.0, 0.0)
        clean_tags = {key: val for key, val in tags.items() if val is not None}
        self._emit(metric, fields={"duration_ms": round(duration_ms, 4)}, tags=clean_tags)
        if self.prometheus_enabled:
            self._prom_metric("histogram", metric, clean_tags).observe(max(duration_seconds, 0.0))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any):
        """Context manager that records execution time for the wrapped block."""

        if not self._enabled:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self.record_timing(metric, elapsed, **tags)

    def _emit(self, metric: str, *, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        tag_segments = [
            f"{key}={self._stringify(value)}"
            for key, value in sorted((key, value) for key, value in tags.items())
        ]
        field_segments = [
            f"{key}={self._stringify(value)}"
            for key, value in sorted(fields.items())
        ]
        segment_parts = field_segments + tag_segments
        message = f"{self._namespace}.{metric}"
        if segment_parts:
            message = f"{message} {' '.join(segment_parts)}"
        self._logger.info(message)

    def _prom_metric(self, kind: str, metric: str, tags: dict[str, Any]):
        label_keys = tuple(sorted(tags.keys()))
        label_names = tuple(self._sanitize_label(name) for name in label_keys)
        prom_key = (kind, metric, label_names)
        collector = self._prom_metrics.get(prom_key)
        if collector is None:
            factory = {"counter": PromCounter, "gauge": PromGauge, "histogram": PromHistogram}[kind]
            collector = factory(
                self._prom_metric_name(metric),
                f"{metric} {kind}",
                labelnames=list(label_names),
                registry=self._prom_registry,
            )
            self._prom_metrics[prom_key] = collector
        if not label_names:
            return collector
        label_values = {
            name: self._stringify(tags[key])
            for name, key in zip(label_names, label_keys)
        }
        return collector.labels(**label_values)

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        sanitized = _PROM_NAME_RE.sub("_", label)
        return sanitized or "label"

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, float):
            return f"{value:.4f}" if not value.is_integer() else f"{int(value)}"
        return str(value)
