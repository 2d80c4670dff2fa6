"""Tests for the performance profiler."""

import threading
import time

import pytest

from cutout_engine.profiler import PipelineProfiler


class TestPipelineProfiler:
    def test_stage_timing(self):
        profiler = PipelineProfiler()
        with profiler.stage("segmentation"):
            time.sleep(0.001)

        stats = profiler.get_stage_stats("segmentation")
        assert stats is not None
        assert stats.call_count == 1
        assert stats.avg_ms >= 0.5  # at least ~1ms

    def test_multiple_calls(self):
        profiler = PipelineProfiler()
        for _ in range(10):
            with profiler.stage("compositing"):
                pass

        stats = profiler.get_stage_stats("compositing")
        assert stats.call_count == 10

    def test_summary(self):
        profiler = PipelineProfiler()
        with profiler.stage("segmentation"):
            pass
        with profiler.stage("compositing"):
            pass

        summary = profiler.summary()
        assert "segmentation" in summary
        assert "compositing" in summary
        assert "publish" not in summary
        assert "avg_ms" in summary["segmentation"]

    def test_record_external_timing(self):
        profiler = PipelineProfiler()
        profiler.record("total", 12.0)
        profiler.record("total", 8.0)
        stats = profiler.get_stage_stats("total")
        assert stats.avg_ms == 10.0
        assert stats.min_ms == 8.0
        assert stats.max_ms == 12.0

    def test_unknown_stage_recorded(self):
        profiler = PipelineProfiler()
        with profiler.stage("custom"):
            pass
        assert "custom" in profiler.summary()

    def test_window(self):
        profiler = PipelineProfiler(window_size=5)
        for i in range(20):
            profiler.record("segmentation", float(i))
        stats = profiler.get_stage_stats("segmentation")
        assert stats.call_count == 20
        assert stats.min_ms == 15.0

    def test_disabled(self):
        profiler = PipelineProfiler()
        profiler.enabled = False
        with profiler.stage("segmentation"):
            pass

        stats = profiler.get_stage_stats("segmentation")
        assert stats is None  # no data recorded

    def test_reset(self):
        profiler = PipelineProfiler()
        with profiler.stage("segmentation"):
            pass
        profiler.reset()
        assert profiler.get_stage_stats("segmentation") is None

    def test_concurrent_recording(self):
        profiler = PipelineProfiler(window_size=10_000)

        def worker():
            for _ in range(1000):
                profiler.record("segmentation", 1.0)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert profiler.get_stage_stats("segmentation").call_count == 4000


class TestFrameBudget:
    def test_counts_samples_over_budget(self):
        profiler = PipelineProfiler(budget_ms=16.0)
        for ms in (4.0, 15.9, 16.0, 16.1, 40.0):
            profiler.record("total", ms)

        stats = profiler.get_stage_stats("total")
        assert stats.call_count == 5
        assert stats.over_budget == 2
        assert profiler.summary()["total"]["over_budget"] == 2

    def test_budget_per_stage(self):
        profiler = PipelineProfiler(budget_ms=10.0)
        profiler.record("segmentation", 25.0)
        profiler.record("compositing", 2.0)
        summary = profiler.summary()
        assert summary["segmentation"]["over_budget"] == 1
        assert summary["compositing"]["over_budget"] == 0

    def test_no_budget_omits_count(self):
        profiler = PipelineProfiler()
        profiler.record("total", 500.0)
        assert profiler.budget_ms is None
        assert "over_budget" not in profiler.summary()["total"]
        assert profiler.get_stage_stats("total").over_budget == 0

    def test_for_refresh_rate(self):
        profiler = PipelineProfiler.for_refresh_rate(60.0)
        assert abs(profiler.budget_ms - 1000.0 / 60.0) < 1e-9

    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            PipelineProfiler(budget_ms=0)

    def test_reset_clears_over_budget(self):
        profiler = PipelineProfiler(budget_ms=1.0)
        profiler.record("custom", 5.0)
        profiler.reset()
        profiler.record("custom", 0.5)
        assert profiler.get_stage_stats("custom").over_budget == 0

    def test_failed_stage_not_recorded(self):
        profiler = PipelineProfiler(budget_ms=1.0)
        with pytest.raises(RuntimeError):
            with profiler.stage("segmentation"):
                raise RuntimeError("model error")
        assert profiler.get_stage_stats("segmentation") is None
