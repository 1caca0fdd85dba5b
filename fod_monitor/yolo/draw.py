from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np
from loguru import logger

from fod_monitor.yolo.constants import COLORS, MASK_ALPHA, SKELETON


if TYPE_CHECKING:
    from collections.abc import Sequence

    from fod_monitor.pipeline.types import Detection, Frame, Keypoint


def class_color(class_id: int) -> tuple[int, int, int]:
    return COLORS[class_id % len(COLORS)]


def class_label(class_id: int, names: Sequence[str]) -> str:
    if 0 <= class_id < len(names):
        return names[class_id]
    return f"class {class_id}"


def draw_masks(frame: np.ndarray, detections: Sequence[Detection]) -> None:
    """Blend each detection mask into the frame with its class color."""
    for det in detections:
        if det.mask is None or det.mask.shape[:2] != frame.shape[:2]:
            continue
        region = det.mask.astype(bool)
        if not region.any():
            continue
        color = np.array(class_color(det.class_id), dtype=np.float32)
        blended = frame[region].astype(np.float32) * (1.0 - MASK_ALPHA) + color * MASK_ALPHA
        frame[region] = blended.astype(np.uint8)


def draw_keypoints(
    frame: np.ndarray,
    keypoints: Sequence[Keypoint],
    color: tuple[int, int, int],
) -> None:
    """Draw visible keypoints and, for COCO-style poses, the skeleton."""
    radius = max(2, int(round(max(frame.shape[:2]) / 200)))
    if len(keypoints) == 17:
        for a, b in SKELETON:
            ka, kb = keypoints[a], keypoints[b]
            if not (ka.visible and kb.visible):
                continue
            cv2.line(
                frame,
                (int(ka.x), int(ka.y)),
                (int(kb.x), int(kb.y)),
                color,
                2,
                cv2.LINE_AA,
            )
    for kp in keypoints:
        if kp.visible:
            cv2.circle(frame, (int(kp.x), int(kp.y)), radius, color, -1, cv2.LINE_AA)


def draw_detections(
    frame: np.ndarray,
    detections: Sequence[Detection],
    names: Sequence[str] = (),
) -> np.ndarray:
    """Draw masks, bounding boxes, labels and keypoints on ``frame`` in place."""
    h, w = frame.shape[:2]

    draw_masks(frame, detections)

    for det in detections:
        x1, y1, x2, y2 = det.box
        x1 = int(np.clip(x1, 0, w - 1))
        y1 = int(np.clip(y1, 0, h - 1))
        x2 = int(np.clip(x2, 0, w - 1))
        y2 = int(np.clip(y2, 0, h - 1))
        if x2 <= x1 or y2 <= y1:
            logger.trace("Skipping degenerate bbox: {}", [x1, y1, x2, y2])
            continue

        color = class_color(det.class_id)
        label = f"{class_label(det.class_id, names)}: {det.confidence:.2f}"

        cv2.rectangle(frame, (x1, y1), (x2, y2), color, 2)

        (tw, th), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)
        label_top = y1 - th - 10 if y1 - th - 10 >= 0 else y1
        cv2.rectangle(frame, (x1, label_top), (x1 + tw, label_top + th + 10), color, -1)
        cv2.putText(
            frame,
            label,
            (x1, label_top + th + 5),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.5,
            (255, 255, 255),
            1,
        )

        if det.keypoints:
            draw_keypoints(frame, det.keypoints, color)

    return frame


class Annotator:
    """Produce the image emitted for a frame."""

    def __init__(self, names: Sequence[str] = (), *, enabled: bool = True) -> None:
        self.names = tuple(names)
        self.enabled = enabled

    def annotate(self, frame: Frame, detections: Sequence[Detection]) -> np.ndarray:
        """Return an annotated copy, or the original buffer when disabled."""
        if not self.enabled:
            return frame.image
        canvas = frame.image.copy()
        if detections:
            draw_detections(canvas, detections, self.names)
        return canvas
