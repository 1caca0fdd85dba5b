"""Camera capture backends and source management."""

from __future__ import annotations

from fod_monitor.capture.manager import (
    CameraSource,
    CameraSourceManager,
    CaptureProtocol,
)
from fod_monitor.capture.opencv import OpenCVCapture


__all__ = [
    "CameraSource",
    "CameraSourceManager",
    "CaptureProtocol",
    "OpenCVCapture",
]
