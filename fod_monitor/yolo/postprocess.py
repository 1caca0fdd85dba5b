"""Post-processing of raw YOLO predictions into detections.

A prediction tensor for one frame has the layout ``(4 + nc + extra, anchors)``:
box ``cx, cy, w, h`` in model space, one score per class, then either
``3 * nk`` keypoint values (pose) or ``nm`` mask coefficients (segment).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np
from loguru import logger

from fod_monitor.errors import FrameError
from fod_monitor.pipeline.types import Detection, FrameOutput, Keypoint, TaskKind


if TYPE_CHECKING:
    from fod_monitor.yolo.preprocess import LetterboxTransform


BOX_CHANNELS = 4
KEYPOINT_STEP = 3
MASK_THRESHOLD = 0.5


def _sigmoid(values: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-values))


def xywh_to_xyxy(boxes: np.ndarray) -> np.ndarray:
    """Convert ``cx, cy, w, h`` rows to ``x1, y1, x2, y2``."""
    x, y, w, h = np.asarray(boxes, dtype=np.float64).T
    return np.stack([x - w / 2, y - h / 2, x + w / 2, y + h / 2], axis=1)


def box_iou(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """IoU of one ``xyxy`` box against an ``(N, 4)`` array of boxes."""
    if boxes.size == 0:
        return np.zeros(0, dtype=np.float64)
    x1 = np.maximum(box[0], boxes[:, 0])
    y1 = np.maximum(box[1], boxes[:, 1])
    x2 = np.minimum(box[2], boxes[:, 2])
    y2 = np.minimum(box[3], boxes[:, 3])
    inter = np.clip(x2 - x1, 0.0, None) * np.clip(y2 - y1, 0.0, None)
    area = max(0.0, box[2] - box[0]) * max(0.0, box[3] - box[1])
    areas = np.clip(boxes[:, 2] - boxes[:, 0], 0.0, None) * np.clip(
        boxes[:, 3] - boxes[:, 1], 0.0, None
    )
    union = area + areas - inter
    with np.errstate(divide="ignore", invalid="ignore"):
        iou = np.where(union > 0, inter / union, 0.0)
    return iou


def non_max_suppression(
    boxes: np.ndarray,
    scores: np.ndarray,
    class_ids: np.ndarray,
    iou_threshold: float,
) -> list[int]:
    """Class-aware greedy NMS.

    Candidates are visited by descending score; equal scores keep their
    decode order. A candidate is dropped when it overlaps a kept candidate of
    the same class with IoU above ``iou_threshold``. Returns kept indices in
    visiting order.
    """
    order = np.argsort(-np.asarray(scores, dtype=np.float64), kind="stable")
    kept: list[int] = []
    for index in order:
        same_class = [k for k in kept if class_ids[k] == class_ids[index]]
        if same_class:
            overlaps = box_iou(boxes[index], boxes[same_class])
            if np.any(overlaps > iou_threshold):
                continue
        kept.append(int(index))
    return kept


@dataclass(frozen=True)
class DecodeSettings:
    """Task and thresholds needed to decode one prediction tensor."""

    task: TaskKind
    nc: int
    nk: int = 0
    nm: int = 0
    conf: float = 0.5
    iou: float = 0.5
    kconf: float = 0.5

    @property
    def channels(self) -> int:
        extra = 0
        if self.task is TaskKind.POSE:
            extra = KEYPOINT_STEP * self.nk
        elif self.task is TaskKind.SEGMENT:
            extra = self.nm
        return BOX_CHANNELS + self.nc + extra


class Decoder:
    """Decode raw predictions into detections for one task kind.

    ``decode`` holds no mutable state, so one instance can be shared by all
    workers of a batch.
    """

    def __init__(self, settings: DecodeSettings) -> None:
        self.settings = settings

    def decode(self, output: FrameOutput, transform: LetterboxTransform) -> tuple[Detection, ...]:
        settings = self.settings
        preds = self._candidates(output.pred)

        class_scores = preds[:, BOX_CHANNELS : BOX_CHANNELS + settings.nc]
        class_ids = np.argmax(class_scores, axis=1)
        confidences = class_scores[np.arange(len(class_ids)), class_ids]

        keep = confidences >= settings.conf
        if not np.any(keep):
            return ()
        preds = preds[keep]
        class_ids = class_ids[keep]
        confidences = confidences[keep]

        boxes = xywh_to_xyxy(preds[:, :BOX_CHANNELS])
        boxes = transform.clip(transform.to_original(boxes))

        kept = non_max_suppression(boxes, confidences, class_ids, settings.iou)

        detections: list[Detection] = []
        for index in kept:
            box = tuple(float(v) for v in boxes[index])
            keypoints = None
            mask = None
            if settings.task is TaskKind.POSE:
                keypoints = self._keypoints(preds[index], transform)
            elif settings.task is TaskKind.SEGMENT:
                mask = self._mask(preds[index], output.proto, box, transform)
            detections.append(
                Detection(
                    class_id=int(class_ids[index]),
                    confidence=float(confidences[index]),
                    box=box,
                    keypoints=keypoints,
                    mask=mask,
                )
            )
        return tuple(detections)

    def _candidates(self, pred: np.ndarray) -> np.ndarray:
        data = np.asarray(pred, dtype=np.float32)
        if data.ndim == 3 and data.shape[0] == 1:
            data = data[0]
        if data.ndim != 2:
            raise FrameError(f"Unexpected prediction shape {np.shape(pred)}")

        channels = self.settings.channels
        if data.shape[0] == channels:
            return data.T
        if data.shape[1] == channels:
            return data
        raise FrameError(
            f"Prediction shape {data.shape} does not match {channels} channels "
            f"for task {self.settings.task.value}"
        )

    def _keypoints(
        self, pred: np.ndarray, transform: LetterboxTransform
    ) -> tuple[Keypoint, ...]:
        nk = self.settings.nk
        raw = pred[len(pred) - KEYPOINT_STEP * nk :].reshape(nk, KEYPOINT_STEP)
        xy = transform.clip(transform.to_original(raw[:, :2].reshape(1, -1))).reshape(nk, 2)
        return tuple(
            Keypoint(
                x=float(x),
                y=float(y),
                confidence=float(conf),
                visible=bool(conf >= self.settings.kconf),
            )
            for (x, y), conf in zip(xy, raw[:, 2], strict=True)
        )

    def _mask(
        self,
        pred: np.ndarray,
        proto: np.ndarray | None,
        box: tuple[float, float, float, float],
        transform: LetterboxTransform,
    ) -> np.ndarray:
        if proto is None:
            raise FrameError("Segmentation output is missing the mask prototypes")
        protos = np.asarray(proto, dtype=np.float32)
        if protos.ndim == 4 and protos.shape[0] == 1:
            protos = protos[0]
        nm, proto_h, proto_w = protos.shape
        if nm != self.settings.nm:
            raise FrameError(f"Expected {self.settings.nm} mask prototypes, got {nm}")

        coefs = pred[len(pred) - nm :]
        mask = _sigmoid(coefs @ protos.reshape(nm, -1)).reshape(proto_h, proto_w)

        input_h, input_w = transform.input_size
        sx, sy = proto_w / input_w, proto_h / input_h
        cx1, cy1, cx2, cy2 = transform.content_box
        x1 = int(np.clip(np.floor(cx1 * sx), 0, proto_w - 1))
        y1 = int(np.clip(np.floor(cy1 * sy), 0, proto_h - 1))
        x2 = int(np.clip(np.ceil(cx2 * sx), x1 + 1, proto_w))
        y2 = int(np.clip(np.ceil(cy2 * sy), y1 + 1, proto_h))
        cropped = np.ascontiguousarray(mask[y1:y2, x1:x2])

        height, width = transform.original_size
        resized = cv2.resize(cropped, (width, height), interpolation=cv2.INTER_LINEAR)
        binary = resized > MASK_THRESHOLD

        bx1, by1, bx2, by2 = (int(round(v)) for v in box)
        boxed = np.zeros_like(binary)
        boxed[by1:by2, bx1:bx2] = binary[by1:by2, bx1:bx2]
        return boxed


def decode_sequential(
    decoder: Decoder,
    outputs: list[FrameOutput],
    transforms: list[LetterboxTransform],
) -> list[tuple[Detection, ...]]:
    """Decode a batch one frame after another."""
    results = []
    for output, transform in zip(outputs, transforms, strict=True):
        try:
            results.append(decoder.decode(output, transform))
        except FrameError as exc:
            logger.warning("Decoding failed: {}", exc)
            results.append(())
    return results
