"""Tests for tick pacing: decimation, single-flight and latest-value hand-off."""

import math
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor

import pytest

from cutout_engine.errors import InferenceFailure
from cutout_engine.pacer import FramePacer, LatestValue, TickOutcome


class ManualExecutor(Executor):
    """Holds submitted work until the test runs it."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self):
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            future.set_result(fn(*args, **kwargs))


class Counter:
    def __init__(self):
        self.n = 0

    def __call__(self):
        value = self.n
        self.n += 1
        return value


class TestDecimation:
    @pytest.mark.parametrize("n,k", [(1, 1), (10, 1), (10, 3), (9, 3), (7, 2), (5, 10)])
    def test_run_count(self, n, k):
        seen = []
        pacer = FramePacer(seen.append, decimation=k)
        for i in range(n):
            pacer.tick(lambda i=i: i)
        assert len(seen) == math.ceil(n / k)
        assert seen == list(range(0, n, k))

    def test_first_tick_runs(self):
        pacer = FramePacer(lambda ctx: ctx, decimation=4)
        assert pacer.tick(lambda: "frame") is TickOutcome.RAN
        assert pacer.tick(lambda: "frame") is TickOutcome.SKIPPED_DECIMATED

    def test_prepare_only_called_when_running(self):
        prepare = Counter()
        pacer = FramePacer(lambda ctx: ctx, decimation=3)
        for _ in range(6):
            pacer.tick(prepare)
        assert prepare.n == 2

    def test_invalid_decimation(self):
        with pytest.raises(ValueError):
            FramePacer(lambda ctx: ctx, decimation=0)

    def test_stats(self):
        pacer = FramePacer(lambda ctx: ctx, decimation=2)
        for _ in range(5):
            pacer.tick(lambda: 1)
        assert pacer.stats.ticks == 5
        assert pacer.stats.runs == 3
        assert pacer.stats.skipped_decimated == 2
        assert pacer.tick_count == 5


class TestSingleFlight:
    def test_busy_tick_is_dropped(self):
        executor = ManualExecutor()
        calls = []
        pacer = FramePacer(calls.append, executor=executor)

        assert pacer.tick(lambda: 1) is TickOutcome.SUBMITTED
        assert pacer.busy
        assert pacer.tick(lambda: 2) is TickOutcome.SKIPPED_BUSY
        assert pacer.tick(lambda: 3) is TickOutcome.SKIPPED_BUSY

        executor.run_pending()
        assert calls == [1]
        assert not pacer.busy
        assert pacer.stats.skipped_busy == 2

    def test_busy_ticks_are_not_queued(self):
        executor = ManualExecutor()
        calls = []
        pacer = FramePacer(calls.append, executor=executor)

        pacer.tick(lambda: 1)
        pacer.tick(lambda: 2)
        executor.run_pending()
        executor.run_pending()

        assert calls == [1]
        assert pacer.tick(lambda: 3) is TickOutcome.SUBMITTED
        executor.run_pending()
        assert calls == [1, 3]

    def test_busy_skip_does_not_prepare(self):
        executor = ManualExecutor()
        prepare = Counter()
        pacer = FramePacer(lambda ctx: ctx, executor=executor)
        pacer.tick(prepare)
        pacer.tick(prepare)
        assert prepare.n == 1

    def test_real_thread_single_flight(self):
        release = threading.Event()
        started = threading.Event()
        calls = []

        def body(ctx):
            calls.append(ctx)
            started.set()
            release.wait(5)
            return ctx

        with ThreadPoolExecutor(max_workers=2) as pool:
            pacer = FramePacer(body, executor=pool)
            assert pacer.tick(lambda: 1) is TickOutcome.SUBMITTED
            assert started.wait(5)
            for i in range(5):
                assert pacer.tick(lambda: i) is TickOutcome.SKIPPED_BUSY
            release.set()
            assert pacer.stop(timeout=5)

        assert calls == [1]


class TestLatestValueWins:
    def test_inline_result(self):
        pacer = FramePacer(lambda ctx: ctx * 10)
        pacer.tick(lambda: 4)
        assert pacer.take_result() == 40
        assert pacer.take_result() is None

    def test_unread_result_is_overwritten(self):
        executor = ManualExecutor()
        pacer = FramePacer(lambda ctx: ctx, executor=executor)

        pacer.tick(lambda: "old")
        executor.run_pending()
        pacer.tick(lambda: "new")
        executor.run_pending()

        assert pacer.take_result() == "new"
        assert pacer.take_result() is None
        assert pacer.stats.dropped_results == 1

    def test_latest_value_channel(self):
        channel = LatestValue()
        assert not channel.pending
        assert channel.put(1) is False
        assert channel.put(2) is True
        assert channel.pending
        assert channel.take() == 2
        assert channel.take() is None
        assert channel.clear() is False


class TestFailures:
    def test_inference_failure_skips_tick(self):
        failures = []

        def body(ctx):
            if ctx == "bad":
                raise InferenceFailure("model error")
            return ctx

        pacer = FramePacer(body, on_failure=failures.append)
        assert pacer.tick(lambda: "bad") is TickOutcome.FAILED
        assert pacer.take_result() is None
        assert not pacer.busy
        assert len(failures) == 1
        assert pacer.stats.failures == 1

        assert pacer.tick(lambda: "good") is TickOutcome.RAN
        assert pacer.take_result() == "good"

    def test_other_errors_propagate_inline(self):
        def body(ctx):
            raise RuntimeError("bug")

        pacer = FramePacer(body)
        with pytest.raises(RuntimeError):
            pacer.tick(lambda: 1)
        assert not pacer.busy

    def test_background_error_raised_on_next_tick(self):
        executor = ManualExecutor()

        def body(ctx):
            raise RuntimeError("bug")

        pacer = FramePacer(body, executor=executor)
        pacer.tick(lambda: 1)
        executor.run_pending()
        with pytest.raises(RuntimeError):
            pacer.tick(lambda: 2)
        assert pacer.tick(lambda: 3) is TickOutcome.SUBMITTED

    def test_no_frame_skips_without_busy(self):
        calls = []
        pacer = FramePacer(calls.append)
        assert pacer.tick(lambda: None) is TickOutcome.SKIPPED_NO_FRAME
        assert not pacer.busy
        assert calls == []
        assert pacer.stats.skipped_no_frame == 1


class TestStop:
    def test_stop_discards_in_flight_result(self):
        executor = ManualExecutor()
        pacer = FramePacer(lambda ctx: ctx, executor=executor)
        pacer.tick(lambda: 1)

        assert pacer.stop(timeout=0.01) is False
        executor.run_pending()
        assert pacer.stop(timeout=1) is True
        assert pacer.take_result() is None
        assert pacer.stats.dropped_results == 1

    def test_stop_discards_unread_result(self):
        pacer = FramePacer(lambda ctx: ctx)
        pacer.tick(lambda: 1)
        assert pacer.stop()
        assert pacer.take_result() is None

    def test_tick_after_stop(self):
        calls = []
        pacer = FramePacer(calls.append)
        pacer.stop()
        assert pacer.stopped
        assert pacer.tick(lambda: 1) is TickOutcome.STOPPED
        assert calls == []

    def test_stop_waits_for_in_flight_call(self):
        release = threading.Event()
        started = threading.Event()
        finished = []

        def body(ctx):
            started.set()
            release.wait(5)
            finished.append(ctx)
            return ctx

        with ThreadPoolExecutor(max_workers=1) as pool:
            pacer = FramePacer(body, executor=pool)
            pacer.tick(lambda: 1)
            assert started.wait(5)

            timer = threading.Timer(0.05, release.set)
            timer.start()
            assert pacer.stop(timeout=5)
            assert finished == [1]
            assert not pacer.busy
            timer.join()

    def test_stop_while_preparing(self):
        events = []
        pacer = FramePacer(lambda ctx: events.append("body"))

        def prepare():
            t = threading.Thread(target=lambda: events.append(("stopped", pacer.stop(timeout=1))))
            t.start()
            t.join()
            return "frame"

        assert pacer.tick(prepare) is TickOutcome.STOPPED
        assert events == [("stopped", True)]
        assert pacer.stats.runs == 0
        assert not pacer.busy

    def test_stop_while_preparing_background(self):
        executor = ManualExecutor()
        pacer = FramePacer(lambda ctx: ctx, executor=executor)

        def prepare():
            t = threading.Thread(target=pacer.stop)
            t.start()
            t.join()
            return "frame"

        assert pacer.tick(prepare) is TickOutcome.STOPPED
        assert executor.pending == []

    def test_stop_when_idle(self):
        pacer = FramePacer(lambda ctx: ctx)
        assert pacer.stop(timeout=0)
