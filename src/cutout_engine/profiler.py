"""Per-stage timing for the cutout pipeline.

A processing tick acquires a frame on the ticking thread, runs segmentation
(and optionally gesture recognition) either inline or on the inference
worker, composites the mask into cutouts and finally publishes them to the
texture bridge. Each of those spans is a stage here; ``total`` is the
acquire-to-publish latency of one frame.

When a frame budget is set (the renderer's refresh interval), samples that
exceed it are counted per stage so the status endpoint can show which stage
is making the pipeline miss frames.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass
class StageStats:
    """Rolling timings of one stage over the profiler window."""
    name: str
    avg_ms: float
    min_ms: float
    max_ms: float
    p95_ms: float
    call_count: int
    over_budget: int = 0


class PipelineProfiler:
    """Rolling stage timings shared by the ticking and inference threads.

    Usage:
        profiler = PipelineProfiler(budget_ms=1000.0 / 60)

        with profiler.stage("segmentation"):
            mask = segmenter.infer(frame, frame.timestamp_us)

        with profiler.stage("compositing"):
            result = composite(frame, mask, policy)

        profiler.record("total", latency_ms)

    ``segmentation`` and ``gesture_recognition`` are timed on the worker in
    background mode while ``/api/status`` reads ``summary()`` from the event
    loop, so all access to the windows goes through one lock.
    """

    STAGES = [
        "frame_acquire",        # source.read() on the ticking thread
        "segmentation",
        "gesture_recognition",
        "compositing",
        "gesture_resolution",
        "publish",              # copy into the bridge's texture slots
        "total",
    ]

    def __init__(self, window_size: int = 120, budget_ms: Optional[float] = None):
        if budget_ms is not None and budget_ms <= 0:
            raise ValueError(f"budget_ms must be positive, got {budget_ms}")
        self._window_size = window_size
        self._budget_ms = budget_ms
        self._timings: dict[str, deque[float]] = {
            s: deque(maxlen=window_size) for s in self.STAGES
        }
        self._counts: dict[str, int] = {s: 0 for s in self.STAGES}
        self._over: dict[str, int] = {s: 0 for s in self.STAGES}
        self._lock = threading.Lock()
        self._enabled = True

    @classmethod
    def for_refresh_rate(cls, refresh_hz: float, window_size: int = 120) -> "PipelineProfiler":
        """Profiler whose frame budget is one display refresh interval."""
        return cls(window_size=window_size, budget_ms=1000.0 / refresh_hz)

    @property
    def budget_ms(self) -> Optional[float]:
        return self._budget_ms

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Time the enclosed block as one sample of ``name``.

        A block that raises records nothing; failed inference is counted by
        the metrics collector instead.
        """
        if not self._enabled:
            yield
            return

        t0 = time.perf_counter()
        yield
        self.record(name, (time.perf_counter() - t0) * 1000.0)

    def record(self, name: str, elapsed_ms: float):
        """Add a sample measured elsewhere, e.g. the end-to-end frame latency."""
        if not self._enabled:
            return
        with self._lock:
            if name not in self._timings:
                self._timings[name] = deque(maxlen=self._window_size)
                self._counts[name] = 0
                self._over[name] = 0
            self._timings[name].append(elapsed_ms)
            self._counts[name] += 1
            if self._budget_ms is not None and elapsed_ms > self._budget_ms:
                self._over[name] += 1

    def get_stage_stats(self, name: str) -> StageStats | None:
        with self._lock:
            timings = self._timings.get(name)
            if not timings:
                return None
            sorted_t = sorted(timings)
            count = self._counts.get(name, 0)
            over = self._over.get(name, 0)

        n = len(sorted_t)
        return StageStats(
            name=name,
            avg_ms=sum(sorted_t) / n,
            min_ms=sorted_t[0],
            max_ms=sorted_t[-1],
            p95_ms=sorted_t[int(n * 0.95)] if n >= 2 else sorted_t[-1],
            call_count=count,
            over_budget=over,
        )

    def summary(self) -> dict[str, dict]:
        """Stages that have samples, keyed by name, as plain dicts for JSON."""
        with self._lock:
            names = list(self._timings)
        result = {}
        for name in names:
            stats = self.get_stage_stats(name)
            if stats and stats.call_count > 0:
                entry = {
                    "avg_ms": round(stats.avg_ms, 3),
                    "min_ms": round(stats.min_ms, 3),
                    "max_ms": round(stats.max_ms, 3),
                    "p95_ms": round(stats.p95_ms, 3),
                    "calls": stats.call_count,
                }
                if self._budget_ms is not None:
                    entry["over_budget"] = stats.over_budget
                result[name] = entry
        return result

    def reset(self):
        """Drop all samples."""
        with self._lock:
            for d in self._timings.values():
                d.clear()
            for k in self._counts:
                self._counts[k] = 0
                self._over[k] = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool):
        self._enabled = value
