"""CutoutEngine CLI — the main entry point for all operations.

Usage:
    cutout-engine serve       — Start the HTTP/WebSocket texture server
    cutout-engine preview     — Show live cutouts in local windows
    cutout-engine record      — Record camera frames for replay
    cutout-engine benchmark   — Measure compositing throughput
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

try:
    import typer
except ImportError:
    raise ImportError("typer is required for CLI. Install with: pip install typer")

from cutout_engine.config import PipelineOptions
from cutout_engine.errors import CutoutEngineError

app = typer.Typer(
    name="cutout-engine",
    help="✂️ Live foreground/background cutouts from a camera feed.",
    add_completion=False,
)


def _load_options(config: Optional[str], **overrides) -> PipelineOptions:
    options = PipelineOptions.from_yaml(config) if config else PipelineOptions()
    data = options.to_dict()
    data.update({k: v for k, v in overrides.items() if v is not None})
    return PipelineOptions.from_dict(data)


def _setup_logging(level: str):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8765, help="Port"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to options YAML"),
    log_level: str = typer.Option("info", help="Log level"),
):
    """Start the texture streaming server."""
    import uvicorn
    from cutout_engine.server import app as fastapi_app, state

    state.options = _load_options(config)
    typer.echo(f"🚀 Starting CutoutEngine server on {host}:{port}")
    typer.echo(f"   Textures at http://{host}:{port}/api/textures/foreground.png")
    uvicorn.run(fastapi_app, host=host, port=port, log_level=log_level)


@app.command()
def preview(
    config: Optional[str] = typer.Option(None, "--config", help="Path to options YAML"),
    replay: Optional[str] = typer.Option(None, help="Replay a recording instead of the camera"),
    camera: Optional[int] = typer.Option(None, help="Camera device index"),
    decimation: Optional[int] = typer.Option(None, help="Process every k-th refresh"),
    gestures: Optional[bool] = typer.Option(None, "--gestures/--no-gestures", help="Enable gesture slots"),
    log_level: str = typer.Option("info", help="Log level"),
):
    """Show the live cutouts and gesture slots in OpenCV windows."""
    import cv2
    from cutout_engine.session import ProcessingSession
    from cutout_engine.sources import ReplaySource

    _setup_logging(log_level)
    options = _load_options(config, camera_index=camera, decimation=decimation, gesture_enabled=gestures)
    source = ReplaySource(replay, loop=True) if replay else None
    session = ProcessingSession.from_options(options, source=source)

    try:
        asyncio.run(session.initialize())
        session.start()
    except CutoutEngineError as e:
        typer.echo(f"❌ {e}", err=True)
        session.stop()
        raise typer.Exit(1)

    typer.echo("🎥 Previewing. Press 'q' to quit")
    period = 1.0 / options.refresh_hz
    labels = {"primary": "left", "secondary": "right"}

    try:
        while True:
            t0 = time.monotonic()
            session.tick()

            bridge = session.bridge
            if bridge.acknowledge_resize():
                typer.echo(f"   Texture size: {bridge.dims[0]}x{bridge.dims[1]}")
            for name in bridge.names:
                if bridge.consume(name):
                    bgra = cv2.cvtColor(bridge.snapshot(name), cv2.COLOR_RGBA2BGRA)
                    if name == "foreground":
                        slots = session.slots
                        text = f"{labels['primary']}: {slots.primary} | {labels['secondary']}: {slots.secondary}"
                        cv2.putText(bgra, text, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 0, 255), 2)
                    cv2.imshow(f"CutoutEngine - {name}", bgra)

            if cv2.waitKey(max(1, int((period - (time.monotonic() - t0)) * 1000))) & 0xFF == ord("q"):
                break
    except KeyboardInterrupt:
        pass
    finally:
        session.stop()
        cv2.destroyAllWindows()

    pacer = session.pacer
    if pacer is not None:
        s = pacer.stats
        typer.echo(f"\n📊 Ticks: {s.ticks} | Runs: {s.runs} | Busy skips: {s.skipped_busy} | Failures: {s.failures}")


@app.command()
def record(
    output: str = typer.Option("recording.npz", "-o", help="Output file path"),
    duration: float = typer.Option(0, help="Recording duration in seconds (0 = until Ctrl+C)"),
    camera: int = typer.Option(0, help="Camera device index"),
    max_frames: Optional[int] = typer.Option(None, help="Stop after this many frames"),
):
    """Record camera frames for later replay."""
    from cutout_engine.recorder import FrameRecorder
    from cutout_engine.sources import CameraSource

    source = CameraSource(camera)
    try:
        source.open()
    except CutoutEngineError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    recorder = FrameRecorder(max_frames=max_frames)
    typer.echo(f"🎥 Recording from camera {camera}...")
    typer.echo("   Press Ctrl+C to stop")
    recorder.start()
    start = time.monotonic()

    try:
        while recorder.is_recording:
            frame = source.next_frame()
            if frame is None:
                continue
            recorder.add_frame(frame)

            if recorder.frame_count % 30 == 0:
                elapsed = time.monotonic() - start
                typer.echo(f"\r   Frames: {recorder.frame_count} | Duration: {elapsed:.1f}s", nl=False)

            if duration > 0 and (time.monotonic() - start) >= duration:
                break
    except KeyboardInterrupt:
        pass
    finally:
        recorder.stop()
        source.close()

    path = recorder.save(output)
    typer.echo(f"\n\n📼 Recorded {recorder.frame_count} frames ({recorder.duration:.1f}s)")
    typer.echo(f"💾 Saved to: {path}")


@app.command()
def benchmark(
    iterations: int = typer.Option(200, help="Number of frames"),
    width: int = typer.Option(640, help="Frame width"),
    height: int = typer.Option(480, help="Frame height"),
    mode: str = typer.Option("dual", help="Compositing mode: single, dual"),
):
    """Run compositing benchmarks on synthetic frames."""
    if iterations < 1:
        raise typer.BadParameter("must be at least 1", param_hint="--iterations")

    import numpy as np
    from cutout_engine.bridge import TextureBridge
    from cutout_engine.compositor import CategoryPolicy, CompositingMode, composite
    from cutout_engine.frames import Frame
    from cutout_engine.profiler import PipelineProfiler

    typer.echo(f"⚡ Running benchmark: {iterations} frames at {width}x{height} ({mode})")

    rng = np.random.default_rng(42)
    frame = Frame.from_rgb(rng.integers(0, 256, (height, width, 3), dtype=np.uint8), timestamp=0.0)
    mask = (rng.random(width * height) > 0.5).astype(np.uint8)
    policy = CategoryPolicy()
    compositing_mode = CompositingMode(mode)
    bridge = TextureBridge()
    profiler = PipelineProfiler()

    times = []
    for _ in range(iterations):
        t0 = time.perf_counter()
        with profiler.stage("compositing"):
            result = composite(frame, mask, policy, mode=compositing_mode)
        with profiler.stage("publish"):
            bridge.publish(result.buffers(), result.dims)
        times.append(time.perf_counter() - t0)

    avg_ms = sum(times) / len(times) * 1000
    p95_ms = sorted(times)[int(len(times) * 0.95)] * 1000
    fps = 1000 / avg_ms if avg_ms > 0 else 0

    typer.echo(f"\n📊 Results:")
    typer.echo(f"   Average latency: {avg_ms:.2f} ms")
    typer.echo(f"   P95 latency:     {p95_ms:.2f} ms")
    typer.echo(f"   Throughput:      {fps:.0f} FPS")

    typer.echo(f"\n📈 Stage breakdown:")
    for name, stats in profiler.summary().items():
        typer.echo(f"   {name:25s} avg={stats['avg_ms']:.3f}ms  p95={stats['p95_ms']:.3f}ms")


@app.command("write-config")
def write_config(
    output: str = typer.Argument("cutout.yml", help="Where to write the default options"),
):
    """Write the default options to a YAML file for editing."""
    path = Path(output)
    PipelineOptions().save_yaml(path)
    typer.echo(f"💾 Default options written to {path}")


def main():
    app()


if __name__ == "__main__":
    main()
