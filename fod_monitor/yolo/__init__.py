"""YOLO model execution: preprocessing, inference, decoding and drawing."""

from __future__ import annotations

from fod_monitor.yolo.draw import Annotator, draw_detections
from fod_monitor.yolo.engine import InferenceEngine, ModelInfo, build_providers
from fod_monitor.yolo.postprocess import (
    DecodeSettings,
    Decoder,
    decode_sequential,
    non_max_suppression,
)
from fod_monitor.yolo.preprocess import (
    LetterboxTransform,
    Preprocessor,
    letterbox,
    preprocess,
)


__all__ = [
    "Annotator",
    "DecodeSettings",
    "Decoder",
    "InferenceEngine",
    "LetterboxTransform",
    "ModelInfo",
    "Preprocessor",
    "build_providers",
    "decode_sequential",
    "draw_detections",
    "letterbox",
    "non_max_suppression",
    "preprocess",
]
