"""Processing session: engine lifecycle and the per-tick pipeline.

A session moves through four states:

    IDLE --initialize()--> READY --start()--> PROCESSING --stop()--> STOPPED

``initialize()`` acquires the segmentation engine (and the gesture engine
when enabled) off the event loop. ``start()`` opens the frame source and
hands scheduling to a FramePacer. Every ``tick()`` may run the pipeline
body on one frame:

    frame -> segmentation (+ gestures) -> composite -> resolve slots

and publishes the newest completed result to the TextureBridge on the
ticking thread. ``stop()`` drains the in-flight call before releasing
the engine handles, and releases them exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from cutout_engine.bridge import TextureBridge
from cutout_engine.compositor import CompositeResult, composite
from cutout_engine.config import PipelineOptions
from cutout_engine.errors import (
    EngineInitFailure,
    InferenceFailure,
    PermissionDenied,
    SessionStateError,
)
from cutout_engine.frames import Frame
from cutout_engine.gestures import EMPTY_SLOTS, GestureObservation, GestureResolver, GestureSlots
from cutout_engine.metrics import MetricsCollector
from cutout_engine.pacer import FramePacer, TickOutcome
from cutout_engine.profiler import PipelineProfiler
from cutout_engine.sources import FrameSource

logger = logging.getLogger("cutout_engine.session")

EngineFactory = Callable[[], Any]


class SessionState(Enum):
    IDLE = "idle"
    READY = "ready"
    PROCESSING = "processing"
    STOPPED = "stopped"


@dataclass(frozen=True, eq=False)
class TickContext:
    """Inputs of one pipeline run. Both engines see the same frame."""
    frame: Frame
    timestamp_us: int


@dataclass(frozen=True, eq=False)
class TickResult:
    """Everything one pipeline run derived from its frame."""
    frame: Frame
    composite: CompositeResult
    observation: Optional[GestureObservation]
    slots: GestureSlots


class ProcessingSession:
    """Owns engine handles, the pacer, the gesture slots and the texture bridge.

    Args:
        source: Where frames come from.
        segmenter_factory: Zero-argument callable returning a segmentation
            engine (``infer(frame, timestamp_us)`` and ``close()``).
        gesture_factory: Same for the gesture engine. Required when
            ``options.gesture_enabled``.
        options: Pipeline variant and pacing options.
        bridge: Texture bridge to publish to. A new one by default.
        metrics: Metrics collector. A new one by default.
        executor: Run inference on this executor instead of the ticking
            thread. With ``options.background_inference`` and no executor,
            the session creates and owns a single-worker pool.
    """

    def __init__(
        self,
        source: FrameSource,
        segmenter_factory: EngineFactory,
        gesture_factory: Optional[EngineFactory] = None,
        options: Optional[PipelineOptions] = None,
        bridge: Optional[TextureBridge] = None,
        metrics: Optional[MetricsCollector] = None,
        profiler: Optional[PipelineProfiler] = None,
        executor: Optional[Executor] = None,
    ):
        self.options = options or PipelineOptions()
        if self.options.gesture_enabled and gesture_factory is None:
            raise ValueError("gesture_enabled requires a gesture_factory")

        self._source = source
        self._segmenter_factory = segmenter_factory
        self._gesture_factory = gesture_factory
        self.bridge = bridge or TextureBridge()
        self.metrics = metrics or MetricsCollector()
        self.profiler = profiler or PipelineProfiler.for_refresh_rate(self.options.refresh_hz)

        self._executor = executor
        self._owns_executor = False

        self._policy = self.options.build_policy()
        self._resolver = GestureResolver(min_confidence=self.options.min_gesture_confidence)

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._initializing = False
        self._stop_requested = False
        self._stopping = False
        self._source_open = False
        self._segmenter = None
        self._gesture = None
        self._pacer: Optional[FramePacer[TickContext, TickResult]] = None

        self._slots = EMPTY_SLOTS
        self._last_result: Optional[TickResult] = None
        self._callbacks: list[Callable[[TickResult], None]] = []

    @classmethod
    def from_options(
        cls,
        options: PipelineOptions,
        source: Optional[FrameSource] = None,
        **kwargs,
    ) -> ProcessingSession:
        """Session backed by the camera and MediaPipe engines named in ``options``."""
        from cutout_engine.engines import gesture_factory, segmenter_factory
        from cutout_engine.sources import CameraSource

        if source is None:
            source = CameraSource(
                options.camera_index,
                width=options.camera_width,
                height=options.camera_height,
            )
        gestures = None
        if options.gesture_enabled:
            gestures = gesture_factory(options.gesture_model, options.delegate, options.num_hands)
        return cls(
            source,
            segmenter_factory(options.segmenter_model, options.delegate),
            gesture_factory=gestures,
            options=options,
            **kwargs,
        )

    # --- Lifecycle ---

    async def initialize(self):
        """Acquire engine handles. IDLE -> READY.

        Raises:
            EngineInitFailure: an engine could not be created. Anything
                already acquired is released and the session stays IDLE.
            SessionStateError: the session is not IDLE.
        """
        with self._lock:
            if self._state is not SessionState.IDLE or self._initializing:
                raise SessionStateError(f"Cannot initialize from state {self._state.value}")
            self._initializing = True

        loop = asyncio.get_running_loop()
        acquired: list = []
        abandoned = threading.Event()
        try:
            segmenter = await loop.run_in_executor(
                None, self._acquire, self._segmenter_factory, acquired, abandoned
            )
            gesture = None
            if self.options.gesture_enabled:
                gesture = await loop.run_in_executor(
                    None, self._acquire, self._gesture_factory, acquired, abandoned
                )
        except BaseException as e:
            # Also reached on cancellation; a factory still running then
            # releases its own handle once it returns.
            with self._lock:
                abandoned.set()
                handles, acquired[:] = list(acquired), []
                self._initializing = False
                if self._stop_requested:
                    self._state = SessionState.STOPPED
            self._release(handles)
            if not isinstance(e, Exception):
                logger.info("Engine initialization cancelled")
                raise
            logger.error("Engine initialization failed: %s", e)
            raise EngineInitFailure(f"Engine initialization failed: {e}") from e

        with self._lock:
            self._initializing = False
            if self._stop_requested:
                # stop() arrived while acquiring; nothing may outlive it.
                self._release(acquired)
                self._state = SessionState.STOPPED
                logger.info("Session stopped during initialization")
                return
            self._segmenter = segmenter
            self._gesture = gesture
            self._state = SessionState.READY

        logger.info(
            "Session ready (mode=%s, gestures=%s, decimation=%d)",
            self.options.compositing_mode,
            self.options.gesture_enabled,
            self.options.decimation,
        )

    def start(self):
        """Open the frame source and begin processing. READY -> PROCESSING.

        Raises:
            PermissionDenied: the frame source could not be opened. The
                session stays READY and ``start()`` may be retried.
            SessionStateError: the session is not READY.
        """
        with self._lock:
            if self._state is not SessionState.READY:
                raise SessionStateError(f"Cannot start from state {self._state.value}")

            try:
                self._source.open()
            except PermissionDenied as e:
                logger.error("Frame source unavailable: %s", e)
                raise
            self._source_open = True

            if self._executor is None and self.options.background_inference:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cutout-inference")
                self._owns_executor = True

            self._pacer = FramePacer(
                self._run_pipeline,
                decimation=self.options.decimation,
                executor=self._executor,
                on_failure=self._on_failure,
            )
            self._state = SessionState.PROCESSING
        logger.info("Session processing")

    def stop(self, timeout: Optional[float] = None):
        """Stop processing and release engine handles. Idempotent.

        Waits for any in-flight inference call to finish (its result is
        discarded) before releasing. From IDLE or READY only the handles
        actually acquired are released.

        Raises:
            TimeoutError: ``timeout`` expired with a call still in flight.
                Nothing is released; call ``stop()`` again to retry.
        """
        with self._lock:
            if self._state is SessionState.STOPPED or self._stopping:
                return
            if self._initializing:
                self._stop_requested = True
                logger.info("Stop requested during initialization")
                return
            self._stopping = True

        try:
            if self._pacer is not None and not self._pacer.stop(timeout):
                raise TimeoutError("In-flight inference did not finish before timeout")

            if self._owns_executor:
                self._executor.shutdown(wait=True)
                self._executor = None
                self._owns_executor = False

            if self._source_open:
                self._source.close()
                self._source_open = False

            with self._lock:
                handles = [h for h in (self._gesture, self._segmenter) if h is not None]
                self._gesture = None
                self._segmenter = None
            self._release(handles)
            with self._lock:
                self._state = SessionState.STOPPED
        finally:
            with self._lock:
                self._stopping = False

        stats = self._pacer.stats if self._pacer else None
        logger.info("Session stopped (%s)", stats.to_dict() if stats else "never started")

    def _acquire(self, factory: EngineFactory, acquired: list, abandoned: threading.Event):
        """Run ``factory`` on a worker thread and record the handle it builds."""
        handle = factory()
        with self._lock:
            if not abandoned.is_set():
                acquired.append(handle)
                return handle
        logger.info("Releasing %s built after initialization was abandoned", type(handle).__name__)
        self._release([handle])
        return None

    def _release(self, handles: list):
        for handle in handles:
            try:
                handle.close()
            except Exception:
                logger.exception("Error releasing %s", type(handle).__name__)

    # --- Ticking ---

    def tick(self) -> TickOutcome:
        """Handle one display-refresh tick.

        Returns the pacer's decision for this tick. Any result completed
        since the previous tick is published before returning.
        """
        with self._lock:
            state = self._state
            pacer = self._pacer
        if state is SessionState.STOPPED:
            return TickOutcome.STOPPED
        if state is not SessionState.PROCESSING:
            raise SessionStateError(f"Cannot tick in state {state.value}")

        outcome = pacer.tick(self._prepare)
        self.metrics.record_tick(outcome.value)
        self._publish_latest()
        return outcome

    def _prepare(self) -> Optional[TickContext]:
        with self.profiler.stage("frame_acquire"):
            try:
                frame = self._source.next_frame()
            except PermissionDenied as e:
                logger.warning("Frame source unavailable this tick: %s", e)
                return None
        if frame is None:
            return None
        return TickContext(frame=frame, timestamp_us=frame.timestamp_us)

    def _run_pipeline(self, ctx: TickContext) -> TickResult:
        segmenter, gesture = self._segmenter, self._gesture
        if segmenter is None:
            raise InferenceFailure("segmenter released")

        with self.profiler.stage("segmentation"):
            mask = segmenter.infer(ctx.frame, ctx.timestamp_us)

        observation = None
        if gesture is not None:
            with self.profiler.stage("gesture_recognition"):
                observation = gesture.infer(ctx.frame, ctx.timestamp_us)

        with self.profiler.stage("compositing"):
            result = composite(
                ctx.frame,
                mask,
                self._policy,
                mode=self.options.mode,
                keep=self.options.keep_layer,
            )

        slots = EMPTY_SLOTS
        if gesture is not None:
            with self.profiler.stage("gesture_resolution"):
                slots = self._resolver.resolve(observation)

        return TickResult(frame=ctx.frame, composite=result, observation=observation, slots=slots)

    def _publish_latest(self):
        result = self._pacer.take_result()
        if result is None:
            return

        with self.profiler.stage("publish"):
            resized = self.bridge.publish(result.composite.buffers(), result.composite.dims)

        if resized:
            logger.info("Texture size is now %dx%d", *result.composite.dims)

        self._slots = result.slots
        self._last_result = result

        latency = max(0.0, time.monotonic() - result.frame.timestamp)
        self.profiler.record("total", latency * 1000.0)
        self.metrics.record_publish(latency, result.composite.coverage, resized)
        if self.options.gesture_enabled:
            self.metrics.record_gestures(result.slots.to_dict())

        for cb in self._callbacks:
            cb(result)

    def _on_failure(self, error: InferenceFailure):
        self.metrics.record_failure()

    def on_publish(self, callback: Callable[[TickResult], None]):
        """Register a callback run on the ticking thread after each publish."""
        self._callbacks.append(callback)

    # --- Introspection ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def slots(self) -> GestureSlots:
        """Gesture slots of the most recently published frame."""
        return self._slots

    @property
    def last_result(self) -> Optional[TickResult]:
        return self._last_result

    @property
    def holds_engines(self) -> bool:
        return self._segmenter is not None or self._gesture is not None

    @property
    def pacer(self) -> Optional[FramePacer]:
        return self._pacer

    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "options": {
                "compositing_mode": self.options.compositing_mode,
                "gesture_enabled": self.options.gesture_enabled,
                "decimation": self.options.decimation,
                "policy": self._policy.describe(),
            },
            "pacer": self._pacer.stats.to_dict() if self._pacer else {},
            "slots": self._slots.to_dict(),
            "texture": {
                "dims": list(self.bridge.dims) if self.bridge.dims else None,
                "version": self.bridge.version,
                "generation": self.bridge.generation,
            },
            "profiler": self.profiler.summary(),
        }

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.stop()
