"""pytest-benchmark for decoding a YOLO prediction tensor."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from fod_monitor.pipeline.types import FrameOutput, TaskKind
from fod_monitor.yolo.postprocess import DecodeSettings, Decoder
from fod_monitor.yolo.preprocess import LetterboxTransform, preprocess


if TYPE_CHECKING:
    from collections.abc import Callable


def _prediction(nc: int = 5, anchors: int = 5376) -> np.ndarray:
    rng = np.random.default_rng(0)
    pred = np.empty((4 + nc, anchors), dtype=np.float32)
    pred[0:2] = rng.uniform(0, 512, (2, anchors))
    pred[2:4] = rng.uniform(4, 64, (2, anchors))
    pred[4:] = rng.uniform(0, 0.6, (nc, anchors))
    return pred


def test_decode_benchmark(
    benchmark: Callable[..., object],
) -> None:
    """Benchmark detect decoding plus NMS for one 512x512 frame."""
    decoder = Decoder(DecodeSettings(task=TaskKind.DETECT, nc=5, conf=0.5, iou=0.5))
    transform = LetterboxTransform(0.8, 0.0, 64.0, (480, 640), (512, 512))
    output = FrameOutput(pred=_prediction())
    benchmark(decoder.decode, output, transform)


def test_preprocess_benchmark(
    benchmark: Callable[..., object],
) -> None:
    """Benchmark letterboxing a 640x480 frame into 512x512."""
    image = np.random.default_rng(1).integers(0, 255, (480, 640, 3), dtype=np.uint8)
    benchmark(preprocess, image, (512, 512))
