from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class HistogramSample:
    ts: float
    value: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}
_histograms: dict[str, Deque[HistogramSample]] = defaultdict(lambda: deque(maxlen=10000))
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)


def _metric_key(name: str, channel: str | None) -> str:
    # Flatten per-channel series into dotted keys so snapshots stay plain dicts.
    return f"{name}.{channel}" if channel else name


def increment_counter(name: str, value: int = 1, *, channel: str | None = None) -> None:
    # Count per channel and in aggregate so dashboards can read either view.
    _counters[name] += value
    if channel:
        _counters[_metric_key(name, channel)] += value


def set_gauge(name: str, value: float, *, channel: str | None = None) -> None:
    _gauges[_metric_key(name, channel)] = float(value)


def observe_histogram(name: str, value: float, *, channel: str | None = None) -> None:
    # Keep bounded raw samples; percentiles are computed on read.
    sample = HistogramSample(ts=time.time(), value=float(value))
    _histograms[name].append(sample)
    if channel:
        _histograms[_metric_key(name, channel)].append(sample)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture provider API latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def _percentile(values: list[float], quantile: float) -> float:
    idx = max(0, math.ceil(quantile * len(values)) - 1)
    return values[idx]


def histogram_summary(name: str, window_s: int | None = None) -> dict[str, float | int | None]:
    samples = list(_histograms.get(name, ()))
    if window_s is not None:
        cutoff = time.time() - window_s
        samples = [sample for sample in samples if sample.ts >= cutoff]
    if not samples:
        return {"count": 0, "p50": None, "p95": None, "max": None}
    values = sorted(sample.value for sample in samples)
    return {
        "count": len(values),
        "p50": _percentile(values, 0.5),
        "p95": _percentile(values, 0.95),
        "max": values[-1],
    }


def external_call_summary(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate provider latency and error rate for ops metrics.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        failures = sum(1 for sample in samples if not sample.success)
        result[integration] = {
            "count": len(samples),
            "error_rate": failures / len(samples),
            "p95": _percentile(latencies, 0.95),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Clear process-local telemetry; tests call this between cases.
    _counters.clear()
    _gauges.clear()
    _histograms.clear()
    _external_samples.clear()
