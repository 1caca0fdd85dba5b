"""Unit tests for the worker pool and performance tracking."""

from __future__ import annotations

import threading
import time
from unittest.mock import patch

import pytest

from fod_monitor.pipeline.metrics.performance import PerformanceTracker
from fod_monitor.pipeline.types import StageTimings
from fod_monitor.pipeline.workers import WorkerPool, default_worker_count


class TestWorkerPool:
    """Tests for WorkerPool."""

    @patch("fod_monitor.pipeline.workers.psutil")
    def test_default_size_from_cpu_count(self, mock_psutil):
        """The pool is sized by the logical CPU count."""
        mock_psutil.cpu_count.return_value = 6
        assert default_worker_count() == 6

        mock_psutil.cpu_count.return_value = None
        assert default_worker_count() == 1

    def test_results_keep_input_order(self):
        """Results come back in input order regardless of finish order."""

        def slow_square(value: int) -> int:
            time.sleep(0.01 * (5 - value))
            return value * value

        with WorkerPool(max_workers=4) as pool:
            results = pool.map(slow_square, range(5))

        assert [item.value for item in results] == [0, 1, 4, 9, 16]
        assert all(item.ok for item in results)

    def test_failure_isolated_to_item(self):
        """One failing item does not affect the others."""

        def fragile(value: int) -> int:
            if value == 2:
                raise RuntimeError("boom")
            return value

        with WorkerPool(max_workers=2) as pool:
            results = pool.map(fragile, [1, 2, 3])

        assert [item.ok for item in results] == [True, False, True]
        assert isinstance(results[1].error, RuntimeError)
        assert results[2].value == 3

    def test_multiple_iterables(self):
        """Arguments are zipped from several iterables."""
        with WorkerPool(max_workers=2) as pool:
            results = pool.map(lambda a, b: a + b, [1, 2], [10, 20])
        assert [item.value for item in results] == [11, 22]

    def test_runs_concurrently(self):
        """Items of one call run on several threads."""
        seen: set[str] = set()
        barrier = threading.Barrier(3, timeout=2.0)

        def record(_: int) -> None:
            seen.add(threading.current_thread().name)
            barrier.wait()

        with WorkerPool(max_workers=3, name="test-worker") as pool:
            results = pool.map(record, range(3))

        assert all(item.ok for item in results)
        assert len(seen) == 3
        assert all(name.startswith("test-worker") for name in seen)


class TestPerformanceTracker:
    """Tests for PerformanceTracker."""

    def test_empty_metrics(self):
        """A fresh tracker reports zeros."""
        metrics = PerformanceTracker().get_metrics()
        assert metrics.iterations == 0
        assert metrics.iteration_fps == 0.0
        assert metrics.stage_ms == {}

    def test_rolling_averages(self):
        """Stage and loop timings are averaged over the window."""
        tracker = PerformanceTracker(avg_iterations=2)
        for total, inference in ((100.0, 40.0), (50.0, 20.0), (50.0, 30.0)):
            tracker.add_iteration(StageTimings(inference_ms=inference, total_ms=total), frames=3)

        metrics = tracker.get_metrics()
        assert metrics.iterations == 3
        assert metrics.frames == 9
        assert metrics.iteration_ms == pytest.approx(50.0)
        assert metrics.iteration_fps == pytest.approx(20.0)
        assert metrics.frames_per_second == pytest.approx(60.0)
        assert metrics.inference_ms == pytest.approx(25.0)
        assert metrics.inference_budget_percent == pytest.approx(50.0)
        assert set(metrics.stage_ms) == set(StageTimings().as_dict())
