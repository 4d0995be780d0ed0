"""Prediction metrics recorded per request and exported in Prometheus format.

Every metric synchronizes on its own: counters are ``prometheus_client`` values
(one lock per labelled child) and the latency timer appends to a bounded deque.
There is no lock shared across metrics, so concurrent requests never serialize
on metrics recording.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Final

from prometheus_client import CollectorRegistry, Counter, generate_latest
from prometheus_client.core import Metric, SummaryMetricFamily
from prometheus_client.registry import Collector

from .logging import get_logger

REQUESTS_TOTAL: Final[str] = "predictions_requests_total"
LATENCY_SECONDS: Final[str] = "predictions_latency_seconds"
ERRORS_TOTAL: Final[str] = "predictions_errors_total"
CLASS_DISTRIBUTION_TOTAL: Final[str] = "predictions_class_distribution_total"

QUANTILES: Final[tuple[float, ...]] = (0.5, 0.95, 0.99)
_N_CLASSES: Final[int] = 10


@dataclass(frozen=True)
class LatencySnapshot:
    count: int
    sum_seconds: float
    quantiles: dict[float, float]


@dataclass(frozen=True)
class MetricsState:
    total_requests: int
    latency: LatencySnapshot
    class_distribution: dict[int, int]
    error_count: dict[str, int]


class PercentileTimer:
    """Sliding-window latency timer.

    Quantiles are computed over the most recent ``window`` samples. Readers
    copy the window and sort outside any lock, so writers are never blocked by
    percentile extraction.
    """

    def __init__(self, window: int = 1024) -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        self._samples: deque[float] = deque(maxlen=window)
        self._totals_lock = threading.Lock()
        self._count = 0
        self._sum = 0.0

    def record(self, seconds: float) -> None:
        if seconds < 0.0 or math.isnan(seconds):
            raise ValueError("duration must be a non-negative number")
        self._samples.append(seconds)
        with self._totals_lock:
            self._count += 1
            self._sum += seconds

    def totals(self) -> tuple[int, float]:
        with self._totals_lock:
            return self._count, self._sum

    def quantiles(self, qs: Iterable[float] = QUANTILES) -> dict[float, float]:
        window = sorted(self._samples.copy())
        return {q: _nearest_rank(window, q) for q in qs}


def _nearest_rank(ordered: list[float], q: float) -> float:
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(q * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


class _LatencyCollector(Collector):
    def __init__(self, timer: PercentileTimer) -> None:
        self._timer = timer

    def collect(self) -> Iterator[Metric]:
        family = SummaryMetricFamily(LATENCY_SECONDS, "Prediction request latency.", labels=[])
        for q, value in self._timer.quantiles().items():
            family.add_sample(LATENCY_SECONDS, {"quantile": str(q)}, value)
        count, total = self._timer.totals()
        family.add_metric([], count_value=count, sum_value=total)
        yield family


class MetricsRecorder:
    """Process-wide prediction metrics, constructed once and passed to collaborators."""

    def __init__(self, registry: CollectorRegistry | None = None, *, window: int = 1024) -> None:
        self._registry = registry if registry is not None else CollectorRegistry()
        self._logger = get_logger()
        self._requests = Counter(
            REQUESTS_TOTAL,
            "Prediction requests received (successful and failed), counted per image.",
            registry=self._registry,
        )
        self._errors = Counter(
            ERRORS_TOTAL,
            "Server-side prediction failures by reason.",
            ["reason"],
            registry=self._registry,
        )
        self._classes = Counter(
            CLASS_DISTRIBUTION_TOTAL,
            "Predicted digit distribution.",
            ["digit"],
            registry=self._registry,
        )
        for digit in range(_N_CLASSES):
            self._classes.labels(digit=str(digit))
        self._latency = PercentileTimer(window)
        self._registry.register(_LatencyCollector(self._latency))

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def increment_requests(self, n: int = 1) -> None:
        try:
            self._requests.inc(n)
        except ValueError as exc:
            self._logger.warning("metrics_record_failed metric=%s error=%s", REQUESTS_TOTAL, exc)

    def record_latency(self, seconds: float) -> None:
        try:
            self._latency.record(seconds)
        except ValueError as exc:
            self._logger.warning("metrics_record_failed metric=%s error=%s", LATENCY_SECONDS, exc)

    def increment_class_label(self, label: int) -> None:
        if not (0 <= label < _N_CLASSES):
            self._logger.warning(
                "metrics_record_failed metric=%s label=%s", CLASS_DISTRIBUTION_TOTAL, label
            )
            return
        self._classes.labels(digit=str(label)).inc()

    def increment_error(self, reason: str) -> None:
        self._errors.labels(reason=reason).inc()

    def snapshot(self) -> MetricsState:
        count, total = self._latency.totals()
        classes = {
            d: int(self._sample(CLASS_DISTRIBUTION_TOTAL, {"digit": str(d)}))
            for d in range(_N_CLASSES)
        }
        errors: dict[str, int] = {}
        for metric in self._errors.collect():
            for s in metric.samples:
                if s.name == ERRORS_TOTAL:
                    errors[s.labels["reason"]] = int(s.value)
        return MetricsState(
            total_requests=int(self._sample(REQUESTS_TOTAL, {})),
            latency=LatencySnapshot(
                count=count, sum_seconds=total, quantiles=self._latency.quantiles()
            ),
            class_distribution=classes,
            error_count=errors,
        )

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def _sample(self, name: str, labels: dict[str, str]) -> float:
        value = self._registry.get_sample_value(name, labels)
        return float(value) if value is not None else 0.0
