#!/usr/bin/env python3
"""CutoutEngine Benchmark — compositing latency and pacing behaviour.

Measures compositing cost on synthetic frames at common camera
resolutions, then drives a session with a synthetic slow segmenter at a
fixed refresh rate to show how decimation and single-flight scheduling
trade published frames for headroom. No camera or model required.

Usage:
    python examples/benchmark.py
    python examples/benchmark.py --iterations 500 --inference-ms 25
"""

from __future__ import annotations

import argparse
import asyncio
import gc
import os
import sys
import time
from pathlib import Path

import numpy as np

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cutout_engine.compositor import CompositingMode, composite
from cutout_engine.config import PipelineOptions
from cutout_engine.frames import Frame
from cutout_engine.session import ProcessingSession
from cutout_engine.sources import FrameSource

RESOLUTIONS = [(320, 240), (640, 480), (1280, 720), (1920, 1080)]


def get_memory_mb() -> float:
    """Get current process RSS in MB."""
    try:
        import resource
        return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024  # Linux: KB → MB
    except ImportError:
        return 0.0


class SyntheticSource(FrameSource):
    def __init__(self, width: int, height: int):
        rng = np.random.default_rng(0)
        self._rgb = rng.integers(0, 256, (height, width, 3), dtype=np.uint8)

    def next_frame(self):
        return Frame.from_rgb(self._rgb)


class SlowSegmenter:
    """Returns a centred-ellipse mask after a fixed delay."""

    def __init__(self, delay_s: float):
        self.delay_s = delay_s

    def infer(self, frame: Frame, timestamp_us: int) -> np.ndarray:
        time.sleep(self.delay_s)
        ys, xs = np.indices((frame.height, frame.width))
        cy, cx = frame.height / 2, frame.width / 2
        inside = ((ys - cy) / (frame.height / 2.5)) ** 2 + ((xs - cx) / (frame.width / 4)) ** 2 <= 1
        return inside.astype(np.uint8).reshape(-1)

    def close(self):
        pass


def benchmark_compositing(width: int, height: int, n: int, mode: CompositingMode) -> dict:
    rng = np.random.default_rng(42)
    frame = Frame.from_rgb(rng.integers(0, 256, (height, width, 3), dtype=np.uint8), timestamp=0.0)
    mask = rng.integers(0, 2, width * height).astype(np.uint8)

    # Warmup
    for _ in range(3):
        composite(frame, mask, mode=mode)

    gc.collect()
    times = []
    for _ in range(n):
        t0 = time.perf_counter()
        composite(frame, mask, mode=mode)
        times.append(time.perf_counter() - t0)

    times_ms = np.array(times) * 1000
    return {
        "mean_ms": float(np.mean(times_ms)),
        "p95_ms": float(np.percentile(times_ms, 95)),
        "throughput_fps": 1000.0 / float(np.mean(times_ms)),
    }


def benchmark_pacing(decimation: int, inference_ms: float, seconds: float, refresh_hz: float) -> dict:
    options = PipelineOptions(decimation=decimation, refresh_hz=refresh_hz, background_inference=True)
    session = ProcessingSession(
        SyntheticSource(320, 240),
        lambda: SlowSegmenter(inference_ms / 1000.0),
        options=options,
    )
    asyncio.run(session.initialize())
    session.start()

    period = 1.0 / refresh_hz
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        t0 = time.monotonic()
        session.tick()
        time.sleep(max(0.0, period - (time.monotonic() - t0)))
    session.stop()

    stats = session.pacer.stats
    return {
        "ticks": stats.ticks,
        "runs": stats.runs,
        "busy": stats.skipped_busy,
        "published": session.metrics.publishes,
        "publish_hz": session.metrics.publishes / seconds,
    }


def print_table(title: str, rows: list[tuple[str, str]]):
    """Print a formatted table."""
    max_key = max(len(r[0]) for r in rows)
    max_val = max(len(r[1]) for r in rows)
    width = max_key + max_val + 7

    print()
    print(f"  ╭{'─' * width}╮")
    print(f"  │ {title:<{width-2}} │")
    print(f"  ├{'─' * width}┤")
    for key, val in rows:
        print(f"  │ {key:<{max_key}}   {val:>{max_val}} │")
    print(f"  ╰{'─' * width}╯")


def main():
    parser = argparse.ArgumentParser(description="CutoutEngine Benchmark")
    parser.add_argument("-n", "--iterations", type=int, default=200, help="Frames per resolution")
    parser.add_argument("--inference-ms", type=float, default=20.0, help="Synthetic segmentation delay")
    parser.add_argument("--seconds", type=float, default=2.0, help="Duration of each pacing run")
    parser.add_argument("--refresh-hz", type=float, default=60.0, help="Simulated display refresh")
    args = parser.parse_args()

    print()
    print("  ┌─────────────────────────────────────┐")
    print("  │   CutoutEngine Benchmark Suite 🚀    │")
    print("  └─────────────────────────────────────┘")

    mem_before = get_memory_mb()

    for mode in (CompositingMode.DUAL, CompositingMode.SINGLE):
        rows = []
        for w, h in RESOLUTIONS:
            r = benchmark_compositing(w, h, args.iterations, mode)
            rows.append((f"{w}x{h}", f"{r['mean_ms']:.2f} ms (p95 {r['p95_ms']:.2f}) {r['throughput_fps']:.0f} FPS"))
        print_table(f"Compositing ({mode.value})", rows)

    rows = []
    for k in (1, 2, 3):
        r = benchmark_pacing(k, args.inference_ms, args.seconds, args.refresh_hz)
        rows.append((
            f"decimation={k}",
            f"{r['runs']}/{r['ticks']} runs, {r['busy']} busy, {r['publish_hz']:.1f} publishes/s",
        ))
    print_table(f"Pacing ({args.inference_ms:.0f} ms inference @ {args.refresh_hz:.0f} Hz)", rows)

    print_table("System", [
        ("Memory (benchmark)", f"{get_memory_mb() - mem_before:.1f} MB"),
        ("Memory (total RSS)", f"{get_memory_mb():.1f} MB"),
        ("Platform", f"{sys.platform} / {os.uname().machine}"),
        ("Python", f"{sys.version.split()[0]}"),
        ("NumPy", f"{np.__version__}"),
    ])
    print()


if __name__ == "__main__":
    main()
