"""Exception hierarchy for the FOD monitor."""

from __future__ import annotations


class FodMonitorError(Exception):
    """Base class for all FOD monitor errors."""


class ConfigError(FodMonitorError):
    """Startup configuration is missing or invalid."""


class ModelLoadError(FodMonitorError):
    """The ONNX model could not be loaded onto the requested device."""


class InferenceError(FodMonitorError):
    """A batched forward pass failed; affects the whole iteration."""


class InferenceTimeoutError(InferenceError):
    """A batched forward pass did not return within the configured timeout."""


class CameraError(FodMonitorError):
    """A camera source could not be opened or read."""

    def __init__(self, source_id: int, reason: str) -> None:
        super().__init__(reason)
        self.source_id = source_id
        self.reason = reason


class FrameError(FodMonitorError):
    """A single frame could not be processed."""


class RoutingError(FodMonitorError, ValueError):
    """A routing command referenced an unknown destination or source."""
