"""Letterbox preprocessing for batched YOLO inference."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from fod_monitor.errors import FrameError
from fod_monitor.yolo.constants import PAD_VALUE


if TYPE_CHECKING:
    from collections.abc import Sequence

    from fod_monitor.pipeline.types import Frame


def infer_input_size(
    input_shape: Sequence[object] | None,
    fallback: tuple[int, int] = (640, 640),
) -> tuple[int, int]:
    """Infer (height, width) from an ONNX input shape."""
    if not input_shape or len(input_shape) < 4:
        return fallback

    height = input_shape[-2]
    width = input_shape[-1]

    if isinstance(height, int) and isinstance(width, int) and height > 0 and width > 0:
        return (height, width)

    return fallback


@dataclass(frozen=True)
class LetterboxTransform:
    """Maps coordinates between the model input and the original frame."""

    scale: float
    pad_x: float
    pad_y: float
    original_size: tuple[int, int]
    input_size: tuple[int, int]

    def to_original(self, points: np.ndarray) -> np.ndarray:
        """Map interleaved ``x, y, x, y...`` values from model to frame space."""
        pts = np.array(points, dtype=np.float64)
        pts[..., 0::2] = (pts[..., 0::2] - self.pad_x) / self.scale
        pts[..., 1::2] = (pts[..., 1::2] - self.pad_y) / self.scale
        return pts

    def to_model(self, points: np.ndarray) -> np.ndarray:
        """Map interleaved ``x, y, x, y...`` values from frame to model space."""
        pts = np.array(points, dtype=np.float64)
        pts[..., 0::2] = pts[..., 0::2] * self.scale + self.pad_x
        pts[..., 1::2] = pts[..., 1::2] * self.scale + self.pad_y
        return pts

    def clip(self, points: np.ndarray) -> np.ndarray:
        """Clip interleaved frame-space coordinates to the original frame."""
        height, width = self.original_size
        pts = np.array(points, dtype=np.float64)
        pts[..., 0::2] = np.clip(pts[..., 0::2], 0.0, float(width))
        pts[..., 1::2] = np.clip(pts[..., 1::2], 0.0, float(height))
        return pts

    @property
    def content_box(self) -> tuple[float, float, float, float]:
        """Unpadded region of the model input as ``x1, y1, x2, y2``."""
        height, width = self.original_size
        return (
            self.pad_x,
            self.pad_y,
            self.pad_x + width * self.scale,
            self.pad_y + height * self.scale,
        )


@dataclass(frozen=True)
class PreparedFrame:
    """A frame converted to a CHW model tensor plus its letterbox transform."""

    frame: Frame
    tensor: np.ndarray
    transform: LetterboxTransform


def _as_bgr(image: np.ndarray) -> np.ndarray:
    if image is None or not isinstance(image, np.ndarray) or image.size == 0:
        raise FrameError("Frame has no pixel data")
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim != 3:
        raise FrameError(f"Unsupported frame shape {image.shape}")
    channels = image.shape[2]
    if channels == 3:
        return image
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if channels == 1:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    raise FrameError(f"Unsupported channel count {channels}")


def letterbox(
    image: np.ndarray,
    input_size: tuple[int, int],
    pad_value: int = PAD_VALUE,
) -> tuple[np.ndarray, LetterboxTransform]:
    """Resize preserving aspect ratio and pad to ``input_size`` (height, width)."""
    image = _as_bgr(image)
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    original_h, original_w = image.shape[:2]
    target_h, target_w = input_size

    scale = min(target_h / original_h, target_w / original_w)
    new_w = min(target_w, max(1, int(round(original_w * scale))))
    new_h = min(target_h, max(1, int(round(original_h * scale))))

    if (new_w, new_h) != (original_w, original_h):
        interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
        resized = cv2.resize(image, (new_w, new_h), interpolation=interpolation)
    else:
        resized = image

    padded = np.full((target_h, target_w, 3), pad_value, dtype=np.uint8)
    pad_x, pad_y = (target_w - new_w) // 2, (target_h - new_h) // 2
    padded[pad_y : pad_y + new_h, pad_x : pad_x + new_w] = resized

    transform = LetterboxTransform(
        scale=float(scale),
        pad_x=float(pad_x),
        pad_y=float(pad_y),
        original_size=(original_h, original_w),
        input_size=(target_h, target_w),
    )
    return padded, transform


def preprocess(
    image: np.ndarray,
    input_size: tuple[int, int] = (640, 640),
) -> tuple[np.ndarray, LetterboxTransform]:
    """Letterbox a BGR image and convert it to a normalized RGB CHW tensor."""
    padded, transform = letterbox(image, input_size)
    blob = padded[:, :, ::-1].astype(np.float32) / 255.0
    blob = np.ascontiguousarray(blob.transpose(2, 0, 1))
    return blob, transform


class Preprocessor:
    """Per-frame preprocessing, safe to call concurrently."""

    def __init__(self, input_size: tuple[int, int]) -> None:
        self.input_size = input_size

    def __call__(self, frame: Frame) -> PreparedFrame:
        tensor, transform = preprocess(frame.image, self.input_size)
        return PreparedFrame(frame=frame, tensor=tensor, transform=transform)


def stack_batch(prepared: Sequence[PreparedFrame], dtype: np.dtype = np.float32) -> np.ndarray:
    """Stack prepared tensors into an ``(N, 3, H, W)`` batch."""
    if not prepared:
        raise ValueError("Cannot stack an empty batch")
    return np.stack([item.tensor for item in prepared]).astype(dtype, copy=False)
