"""Metrics emitted as structured log lines, with optional Prometheus export."""

from __future__ import annotations

import logging
import re
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")


class MetricsRecorder:
    """Record counters and timings for provider routing and chat requests."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "noodexx",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "noodexx"
        self._logger = logger or logging.getLogger("noodexx.metrics")
        self._registry = registry
        if prometheus_enabled and self._registry is None:
            self._registry = CollectorRegistry()
        self._collectors: dict[tuple[str, str, tuple[str, ...]], Any] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if self._registry is None:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        if not self._enabled:
            return
        tags = {key: val for key, val in tags.items() if val is not None}
        self._log(metric, {"value": int(value)}, tags)
        collector = self._collector("counter", metric, tags)
        if collector is not None:
            collector.inc(max(float(value), 0.0))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        if not self._enabled:
            return
        tags = {key: val for key, val in tags.items() if val is not None}
        duration_ms = round(max(duration_seconds, 0.0) * 1000.0, 4)
        self._log(metric, {"duration_ms": duration_ms}, tags)
        collector = self._collector("histogram", metric, tags)
        if collector is not None:
            collector.observe(max(duration_seconds, 0.0))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _log(self, metric: str, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={_stringify(value)}" for key, value in sorted(fields.items())]
        segments.extend(f"{key}={_stringify(value)}" for key, value in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _collector(self, kind: str, metric: str, tags: dict[str, Any]):
        if self._registry is None:
            return None
        keys = tuple(sorted(tags))
        labels = tuple(_PROM_NAME_RE.sub("_", key) or "label" for key in keys)
        cache_key = (kind, metric, labels)
        with self._lock:
            collector = self._collectors.get(cache_key)
            if collector is None:
                name = f"{_PROM_NAME_RE.sub('_', self._namespace)}_{_PROM_NAME_RE.sub('_', metric)}"
                factory = Counter if kind == "counter" else Histogram
                collector = factory(name, f"{metric} {kind}", labelnames=list(labels), registry=self._registry)
                self._collectors[cache_key] = collector
        if not labels:
            return collector
        values = {label: _stringify(tags[key]) for label, key in zip(labels, keys)}
        return collector.labels(**values)


def _stringify(value: Any) -> str:
    if isinstance(value, float):
        return f"{int(value)}" if value.is_integer() else f"{value:.4f}"
    return str(value)


__all__ = ["MetricsRecorder"]
