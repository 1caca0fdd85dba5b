"""Performance metrics helpers for pipelines."""

from __future__ import annotations

from fod_monitor.pipeline.metrics.performance import PerformanceTracker


__all__ = [
    "PerformanceTracker",
]
