from __future__ import annotations

from fod_monitor.pipeline.batching import BatchAssembler
from fod_monitor.pipeline.metrics.performance import PerformanceTracker
from fod_monitor.pipeline.orchestrator import PipelineOrchestrator
from fod_monitor.pipeline.router import OutputRouter, encode_image
from fod_monitor.pipeline.routing import RoutingController, RoutingTable
from fod_monitor.pipeline.sinks import EventSink, OpenCVWindowSink, QueueSink
from fod_monitor.pipeline.types import (
    Batch,
    Detection,
    ErrorEvent,
    Frame,
    FrameResult,
    ImagePayloadEvent,
    IterationReport,
    Keypoint,
    NoDataEvent,
    PipelineMetrics,
    PipelineState,
    SourcesEvent,
    StageTimings,
    TaskKind,
)
from fod_monitor.pipeline.workers import WorkerPool, WorkResult


__all__ = [
    "Batch",
    "BatchAssembler",
    "Detection",
    "ErrorEvent",
    "EventSink",
    "Frame",
    "FrameResult",
    "ImagePayloadEvent",
    "IterationReport",
    "Keypoint",
    "NoDataEvent",
    "OpenCVWindowSink",
    "OutputRouter",
    "PerformanceTracker",
    "PipelineMetrics",
    "PipelineOrchestrator",
    "PipelineState",
    "QueueSink",
    "RoutingController",
    "RoutingTable",
    "SourcesEvent",
    "StageTimings",
    "TaskKind",
    "WorkResult",
    "WorkerPool",
    "encode_image",
]
