"""Performance tracking for the pipeline loop."""

from __future__ import annotations

import time
from collections import deque

from fod_monitor.pipeline.types import PipelineMetrics, StageTimings


class PerformanceTracker:
    """Track iteration and stage timings with moving averages."""

    def __init__(self, avg_iterations: int = 30) -> None:
        """Initialize the tracker with a rolling window size."""
        self.avg_iterations = avg_iterations
        self.iteration_times: deque[float] = deque(maxlen=avg_iterations)
        self.frame_counts: deque[int] = deque(maxlen=avg_iterations)
        self.stage_times: dict[str, deque[float]] = {}
        self.iteration_count = 0
        self.frame_count = 0
        self.start_time = time.perf_counter()

    def add_iteration(self, timings: StageTimings, frames: int) -> None:
        """Record one finished iteration."""
        self.iteration_times.append(timings.total_ms)
        self.frame_counts.append(frames)
        for stage, elapsed_ms in timings.as_dict().items():
            window = self.stage_times.setdefault(stage, deque(maxlen=self.avg_iterations))
            window.append(elapsed_ms)
        self.iteration_count += 1
        self.frame_count += frames

    def get_metrics(self) -> PipelineMetrics:
        """Compute aggregated performance metrics."""
        metrics = PipelineMetrics(iterations=self.iteration_count, frames=self.frame_count)

        if self.iteration_times:
            window_ms = sum(self.iteration_times)
            metrics.iteration_ms = window_ms / len(self.iteration_times)
            if window_ms > 0:
                metrics.iteration_fps = 1000.0 * len(self.iteration_times) / window_ms
                metrics.frames_per_second = 1000.0 * sum(self.frame_counts) / window_ms

        metrics.stage_ms = {
            stage: sum(window) / len(window)
            for stage, window in self.stage_times.items()
            if window
        }
        metrics.inference_ms = metrics.stage_ms.get("inference", 0.0)
        if metrics.iteration_ms > 0:
            metrics.inference_budget_percent = (
                metrics.inference_ms / metrics.iteration_ms
            ) * 100

        return metrics

    def overall_throughput(self) -> float:
        """Frames per second since the tracker was created."""
        elapsed = time.perf_counter() - self.start_time
        return self.frame_count / elapsed if elapsed > 0 else 0.0
