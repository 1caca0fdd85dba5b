"""Multi-camera foreign object detection with ONNX Runtime."""

from __future__ import annotations

from fod_monitor.config import PipelineConfig, load_config
from fod_monitor.errors import (
    CameraError,
    ConfigError,
    FodMonitorError,
    FrameError,
    InferenceError,
    InferenceTimeoutError,
    ModelLoadError,
    RoutingError,
)
from fod_monitor.service import FodMonitorService


__all__ = [
    "CameraError",
    "ConfigError",
    "FodMonitorError",
    "FodMonitorService",
    "FrameError",
    "InferenceError",
    "InferenceTimeoutError",
    "ModelLoadError",
    "PipelineConfig",
    "RoutingError",
    "load_config",
]
