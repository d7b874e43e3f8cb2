"""Per-stage latency instrumentation with OpenTelemetry export.

Tracks latency for each pipeline stage against a budget and logs a
warning when a budget is exceeded. Samples are also recorded into an
OpenTelemetry histogram, which is a no-op until the host application
installs a MeterProvider.

Stage budgets (ms):
    audio_frame              5
    face_inference          80
    tick                    10
    emotion_classification 500
    emotion_model_load   30000
"""

import logging
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import metrics as otel_metrics

logger = logging.getLogger(__name__)

LATENCY_BUDGETS_MS: dict[str, float] = {
    "audio_frame": 5.0,
    "face_inference": 80.0,
    "tick": 10.0,
    "emotion_classification": 500.0,
    "emotion_model_load": 30_000.0,
}

_MAX_SAMPLES_PER_STAGE = 2048


class LatencyTracker:
    """Measures and records per-stage latency.

    Keeps the most recent samples per stage in memory (bounded) for
    get_stats() and prometheus_text().

    Usage::

        tracker = LatencyTracker()
        with tracker.measure("face_inference"):
            result = extractor.process(frame, now)
        tracker.get_stats()
        # {"face_inference": {"mean_ms": 21.4, "p95_ms": 35.0, "max_ms": 41.2, "count": 96.0}}

    Args:
        service_name: Meter name used for the OTEL histogram.
    """

    def __init__(self, service_name: str = "delivery_metrics") -> None:
        self._service_name = service_name
        self._samples: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=_MAX_SAMPLES_PER_STAGE)
        )
        self._histogram: Optional[otel_metrics.Histogram] = None

        meter = otel_metrics.get_meter(service_name)
        self._histogram = meter.create_histogram(
            name="delivery_metrics.stage_latency_ms",
            description="Per-stage pipeline latency in milliseconds",
            unit="ms",
        )

    @contextmanager
    def measure(self, stage: str) -> Iterator[None]:
        """Time the enclosed block and record it under ``stage``."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record(stage, (time.perf_counter() - start) * 1000.0)

    def record(self, stage: str, elapsed_ms: float) -> None:
        self._samples[stage].append(elapsed_ms)

        if self._histogram is not None:
            self._histogram.record(elapsed_ms, {"stage": stage})

        budget = LATENCY_BUDGETS_MS.get(stage)
        if budget is not None and elapsed_ms > budget:
            logger.warning(
                "Latency budget exceeded: stage=%s elapsed=%.1fms budget=%.1fms",
                stage,
                elapsed_ms,
                budget,
            )

    def get_stats(self) -> dict[str, dict[str, float]]:
        """Return mean_ms, max_ms, p95_ms and count for every measured stage."""
        result: dict[str, dict[str, float]] = {}
        for stage, samples in list(self._samples.items()):
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            p95_idx = max(0, int(n * 0.95) - 1)
            result[stage] = {
                "mean_ms": round(sum(sorted_s) / n, 2),
                "max_ms": round(sorted_s[-1], 2),
                "p95_ms": round(sorted_s[p95_idx], 2),
                "count": float(n),
            }
        return result

    def prometheus_text(self) -> str:
        """Format latency stats in the Prometheus text exposition format."""
        lines: list[str] = []
        for stage, s in self.get_stats().items():
            base = f'delivery_metrics_stage_latency_ms{{stage="{stage}"}}'
            lines += [
                f"# HELP {base} Stage latency in ms",
                f"# TYPE {base} gauge",
                f"{base}_mean {s['mean_ms']}",
                f"{base}_max {s['max_ms']}",
                f"{base}_p95 {s['p95_ms']}",
                f"{base}_count {s['count']}",
            ]
        return "\n".join(lines)

    def reset(self) -> None:
        self._samples.clear()
