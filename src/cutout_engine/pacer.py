"""Tick pacing for the frame pipeline.

The pacer is driven by an external tick, normally one call per display
refresh. On each tick it decides whether to run the pipeline body:

- Decimation: only every k-th tick is eligible (ticks 0, k, 2k, ...).
- Single-flight: if the previous body is still running, the tick is
  dropped, not queued. Latency stays bounded by one inference call.
- Latest value wins: completed results land in a single-slot channel and
  a newer result overwrites an unread older one.

The body runs inline on the ticking thread by default. Pass an executor to
run it in the background; the ticking thread then only submits work and
collects results with ``take_result()``.

Usage:
    pacer = FramePacer(run_pipeline, decimation=2)

    def on_refresh():
        pacer.tick(grab_context)
        result = pacer.take_result()
        if result is not None:
            publish(result)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from cutout_engine.errors import InferenceFailure

logger = logging.getLogger("cutout_engine.pacer")

C = TypeVar("C")
T = TypeVar("T")


class TickOutcome(Enum):
    RAN = "ran"
    SUBMITTED = "submitted"
    FAILED = "failed"
    SKIPPED_DECIMATED = "skipped_decimated"
    SKIPPED_BUSY = "skipped_busy"
    SKIPPED_NO_FRAME = "skipped_no_frame"
    STOPPED = "stopped"


@dataclass
class PacerStats:
    """Counters for what the pacer did with its ticks."""
    ticks: int = 0
    runs: int = 0
    completed: int = 0
    failures: int = 0
    skipped_decimated: int = 0
    skipped_busy: int = 0
    skipped_no_frame: int = 0
    dropped_results: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class LatestValue(Generic[T]):
    """Single-slot channel. ``put`` overwrites, ``take`` empties."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._full = False

    def put(self, value: T) -> bool:
        """Store ``value``. Returns True if an unread value was overwritten."""
        with self._lock:
            overwrote = self._full
            self._value = value
            self._full = True
            return overwrote

    def take(self) -> Optional[T]:
        with self._lock:
            value = self._value
            self._value = None
            self._full = False
            return value

    def clear(self) -> bool:
        """Drop any unread value. Returns True if one was dropped."""
        with self._lock:
            dropped = self._full
            self._value = None
            self._full = False
            return dropped

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._full


class FramePacer(Generic[C, T]):
    """Runs ``body(context)`` on eligible ticks with single-flight discipline.

    Args:
        body: The pipeline body. Raises InferenceFailure for a recoverable
            per-tick failure; any other exception is a bug and propagates.
        decimation: Run on every k-th tick.
        executor: Run bodies in the background on this executor. None runs
            them inline on the ticking thread.
        on_failure: Called with each InferenceFailure.
    """

    def __init__(
        self,
        body: Callable[[C], T],
        decimation: int = 1,
        executor: Optional[Executor] = None,
        on_failure: Optional[Callable[[InferenceFailure], None]] = None,
    ):
        if decimation < 1:
            raise ValueError(f"decimation must be >= 1, got {decimation}")

        self._body = body
        self._decimation = decimation
        self._executor = executor
        self._on_failure = on_failure

        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._busy = False
        self._stopping = False
        self._tick_count = 0
        self._error: Optional[BaseException] = None
        self._latest: LatestValue[T] = LatestValue()
        self.stats = PacerStats()

    # --- Scheduling ---

    def tick(self, prepare: Callable[[], Optional[C]]) -> TickOutcome:
        """Handle one external tick.

        ``prepare`` is only called when the tick will run; it builds the
        per-tick context (typically pulls the frame) and may return None to
        skip the tick, e.g. when no frame is available.
        """
        self._raise_background_error()

        if self._stopping:
            return TickOutcome.STOPPED

        index = self._tick_count
        self._tick_count += 1

        with self._lock:
            self.stats.ticks += 1
            if index % self._decimation != 0:
                self.stats.skipped_decimated += 1
                return TickOutcome.SKIPPED_DECIMATED
            if self._busy:
                self.stats.skipped_busy += 1
                return TickOutcome.SKIPPED_BUSY

        context = prepare()
        if context is None:
            with self._lock:
                self.stats.skipped_no_frame += 1
            return TickOutcome.SKIPPED_NO_FRAME

        with self._lock:
            # stop() may have drained while prepare() ran.
            if self._stopping:
                return TickOutcome.STOPPED
            self._busy = True
            self._idle.clear()
            self.stats.runs += 1

        if self._executor is None:
            return self._run(context)

        try:
            self._executor.submit(self._run_background, context)
        except RuntimeError:
            # Executor already shut down.
            self._finish()
            raise
        return TickOutcome.SUBMITTED

    def _run(self, context: C) -> TickOutcome:
        try:
            result = self._body(context)
        except InferenceFailure as exc:
            logger.warning("Inference failed, skipping tick: %s", exc)
            with self._lock:
                self.stats.failures += 1
            if self._on_failure:
                self._on_failure(exc)
            return TickOutcome.FAILED
        else:
            with self._lock:
                self.stats.completed += 1
                if self._stopping:
                    self.stats.dropped_results += 1
                    return TickOutcome.RAN
            if self._latest.put(result):
                with self._lock:
                    self.stats.dropped_results += 1
            return TickOutcome.RAN
        finally:
            self._finish()

    def _run_background(self, context: C):
        try:
            self._run(context)
        except Exception as exc:
            logger.exception("Pipeline body raised in background")
            with self._lock:
                self._error = exc

    def _finish(self):
        with self._lock:
            self._busy = False
            self._idle.set()

    def _raise_background_error(self):
        with self._lock:
            error, self._error = self._error, None
        if error is not None:
            raise error

    # --- Results ---

    def take_result(self) -> Optional[T]:
        """Pop the most recent completed result, or None."""
        self._raise_background_error()
        if self._stopping:
            return None
        return self._latest.take()

    # --- Shutdown ---

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop scheduling and wait for the in-flight body to finish.

        The in-flight result, and any unread one, is discarded. Returns True
        once nothing is outstanding, False if ``timeout`` expired first.
        """
        with self._lock:
            self._stopping = True
        drained = self._idle.wait(timeout)
        if self._latest.clear():
            with self._lock:
                self.stats.dropped_results += 1

        with self._lock:
            error, self._error = self._error, None
        if error is not None:
            logger.error("Discarding background error at stop: %r", error)

        if not drained:
            logger.warning("Pacer stop timed out with a call still in flight")
        return drained

    # --- Introspection ---

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    @property
    def stopped(self) -> bool:
        return self._stopping

    @property
    def decimation(self) -> int:
        return self._decimation

    @property
    def tick_count(self) -> int:
        return self._tick_count
