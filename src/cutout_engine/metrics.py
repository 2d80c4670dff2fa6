"""Prometheus-compatible metrics for CutoutEngine.

Exposes /metrics in Prometheus text exposition format.
No external dependencies — generates the text format directly.

Tracked metrics:
- cutout_engine_ticks_total (counter, by outcome)
- cutout_engine_inference_failures_total (counter)
- cutout_engine_publishes_total (counter)
- cutout_engine_resizes_total (counter)
- cutout_engine_gestures_total (counter, by slot and label)
- cutout_engine_tick_latency_seconds (histogram)
- cutout_engine_foreground_coverage (gauge)
- cutout_engine_active_connections (gauge)
"""

from __future__ import annotations

import threading
import time
from collections import Counter


class _Histogram:
    """Simple histogram with configurable buckets."""

    def __init__(self, buckets: list[float]):
        self.buckets = sorted(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0
        self._lock = threading.Lock()

    def observe(self, value: float):
        with self._lock:
            self.count += 1
            self.sum += value
            for i, b in enumerate(self.buckets):
                if value <= b:
                    self.bucket_counts[i] += 1
                    break

    def render(self, name: str, help_text: str) -> str:
        lines = [
            f"# HELP {name} {help_text}",
            f"# TYPE {name} histogram",
        ]
        with self._lock:
            cumulative = 0
            for i, b in enumerate(self.buckets):
                cumulative += self.bucket_counts[i]
                lines.append(f'{name}_bucket{{le="{b}"}} {cumulative}')
            lines.append(f'{name}_bucket{{le="+Inf"}} {self.count}')
            lines.append(f"{name}_sum {self.sum:.6f}")
            lines.append(f"{name}_count {self.count}")
        return "\n".join(lines)


class MetricsCollector:
    """Collects and exposes Prometheus metrics for CutoutEngine."""

    def __init__(self):
        self._tick_outcomes: Counter = Counter()
        self._gesture_counts: Counter = Counter()
        self._inference_failures = 0
        self._publishes = 0
        self._resizes = 0
        self._coverage = 0.0
        self._active_connections = 0
        self._lock = threading.Lock()

        # Tick latency: buckets from 1ms to 100ms
        self._latency = _Histogram(
            [0.001, 0.002, 0.005, 0.010, 0.016, 0.033, 0.050, 0.100]
        )

        self._start_time = time.time()

    def record_tick(self, outcome: str):
        with self._lock:
            self._tick_outcomes[outcome] += 1

    def record_failure(self):
        with self._lock:
            self._inference_failures += 1

    def record_publish(self, latency_seconds: float, coverage: float, resized: bool):
        with self._lock:
            self._publishes += 1
            if resized:
                self._resizes += 1
            self._coverage = coverage
        self._latency.observe(latency_seconds)

    def record_gestures(self, slots: dict[str, str]):
        with self._lock:
            for slot, label in slots.items():
                self._gesture_counts[(slot, label)] += 1

    def set_connections(self, count: int):
        self._active_connections = count

    def render(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines: list[str] = []

        uptime = time.time() - self._start_time
        lines.append("# HELP cutout_engine_uptime_seconds Time since collector start")
        lines.append("# TYPE cutout_engine_uptime_seconds gauge")
        lines.append(f"cutout_engine_uptime_seconds {uptime:.1f}")
        lines.append("")

        lines.append("# HELP cutout_engine_ticks_total Ticks handled by the pacer, by outcome")
        lines.append("# TYPE cutout_engine_ticks_total counter")
        with self._lock:
            for outcome, count in sorted(self._tick_outcomes.items()):
                lines.append(f'cutout_engine_ticks_total{{outcome="{outcome}"}} {count}')
        lines.append("")

        lines.append("# HELP cutout_engine_inference_failures_total Ticks skipped because inference failed")
        lines.append("# TYPE cutout_engine_inference_failures_total counter")
        lines.append(f"cutout_engine_inference_failures_total {self._inference_failures}")
        lines.append("")

        lines.append("# HELP cutout_engine_publishes_total Composited frames published to the texture bridge")
        lines.append("# TYPE cutout_engine_publishes_total counter")
        lines.append(f"cutout_engine_publishes_total {self._publishes}")
        lines.append("")

        lines.append("# HELP cutout_engine_resizes_total Publishes that changed texture dimensions")
        lines.append("# TYPE cutout_engine_resizes_total counter")
        lines.append(f"cutout_engine_resizes_total {self._resizes}")
        lines.append("")

        lines.append("# HELP cutout_engine_gestures_total Resolved gesture labels by slot")
        lines.append("# TYPE cutout_engine_gestures_total counter")
        with self._lock:
            for (slot, label), count in sorted(self._gesture_counts.items()):
                lines.append(f'cutout_engine_gestures_total{{slot="{slot}",label="{label}"}} {count}')
        lines.append("")

        lines.append(self._latency.render(
            "cutout_engine_tick_latency_seconds",
            "Time from frame capture to publish in seconds"
        ))
        lines.append("")

        lines.append("# HELP cutout_engine_foreground_coverage Fraction of the last frame classified as foreground")
        lines.append("# TYPE cutout_engine_foreground_coverage gauge")
        lines.append(f"cutout_engine_foreground_coverage {self._coverage:.4f}")
        lines.append("")

        lines.append("# HELP cutout_engine_active_connections Current WebSocket connections")
        lines.append("# TYPE cutout_engine_active_connections gauge")
        lines.append(f"cutout_engine_active_connections {self._active_connections}")
        lines.append("")

        return "\n".join(lines) + "\n"

    @property
    def tick_outcomes(self) -> dict[str, int]:
        with self._lock:
            return dict(self._tick_outcomes)

    @property
    def publishes(self) -> int:
        return self._publishes

    @property
    def inference_failures(self) -> int:
        return self._inference_failures
