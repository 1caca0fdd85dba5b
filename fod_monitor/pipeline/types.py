"""Shared data structures for the inference pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Union


if TYPE_CHECKING:
    import numpy as np


class TaskKind(Enum):
    """Structured output produced by the detection model."""

    DETECT = "detect"
    POSE = "pose"
    SEGMENT = "segment"


class SourceStatus(Enum):
    """Lifecycle state of a camera source."""

    CLOSED = "closed"
    OPEN = "open"
    ERROR = "error"


class ReadStatus(Enum):
    """Outcome of a single bounded camera read."""

    READY = "ready"
    NOT_READY = "not-ready"
    ERROR = "error"


class PipelineState(Enum):
    """Iteration state of the orchestrator."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    ASSEMBLING = "assembling"
    PREPROCESSING = "preprocessing"
    INFERRING = "inferring"
    POSTPROCESSING = "postprocessing"
    ANNOTATING = "annotating"
    ROUTING = "routing"


@dataclass(frozen=True)
class Frame:
    """A captured frame owned by the pipeline for one iteration."""

    source_id: int
    sequence: int
    timestamp: float
    image: np.ndarray

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


@dataclass(frozen=True)
class ReadResult:
    """Result of reading the most recent frame from a source."""

    source_id: int
    status: ReadStatus
    frame: Frame | None = None
    reason: str = ""


@dataclass(frozen=True)
class SourceHealth:
    """Diagnostic snapshot of a camera source."""

    source_id: int
    status: SourceStatus
    reason: str = ""
    frames_read: int = 0
    consecutive_failures: int = 0


@dataclass(frozen=True)
class Batch:
    """Frames processed together by a single model call."""

    frames: tuple[Frame, ...] = ()
    deferred: tuple[int, ...] = ()

    def __len__(self) -> int:
        return len(self.frames)

    @property
    def source_ids(self) -> tuple[int, ...]:
        return tuple(frame.source_id for frame in self.frames)


@dataclass(frozen=True)
class Keypoint:
    """A pose keypoint in original-frame coordinates."""

    x: float
    y: float
    confidence: float
    visible: bool


@dataclass(frozen=True)
class Detection:
    """A single decoded detection in original-frame coordinates."""

    class_id: int
    confidence: float
    box: tuple[float, float, float, float]
    keypoints: tuple[Keypoint, ...] | None = None
    mask: np.ndarray | None = field(default=None, compare=False, repr=False)

    @property
    def width(self) -> float:
        return self.box[2] - self.box[0]

    @property
    def height(self) -> float:
        return self.box[3] - self.box[1]


@dataclass(frozen=True)
class FrameOutput:
    """Raw model output for one input of a batch."""

    pred: np.ndarray
    proto: np.ndarray | None = None


@dataclass(frozen=True)
class FrameResult:
    """A frame, its detections and the image to emit."""

    frame: Frame
    detections: tuple[Detection, ...]
    image: np.ndarray


@dataclass(frozen=True)
class ImagePayloadEvent:
    """Encoded (optionally annotated) frame for a destination."""

    destination_id: int
    source_id: int
    sequence: int
    image: bytes
    encoding: str
    detections: tuple[Detection, ...] = ()


@dataclass(frozen=True)
class ErrorEvent:
    """Human readable failure for a destination."""

    destination_id: int
    source_id: int | None
    reason: str


@dataclass(frozen=True)
class NoDataEvent:
    """The mapped source delivered nothing this iteration."""

    destination_id: int
    source_id: int | None


@dataclass(frozen=True)
class SourcesEvent:
    """Camera source ids that can currently be opened."""

    source_ids: tuple[int, ...]


DestinationEvent = Union[ImagePayloadEvent, ErrorEvent, NoDataEvent]


@dataclass
class StageTimings:
    """Per-stage durations of one iteration in milliseconds."""

    acquire_ms: float = 0.0
    assemble_ms: float = 0.0
    preprocess_ms: float = 0.0
    inference_ms: float = 0.0
    postprocess_ms: float = 0.0
    annotate_ms: float = 0.0
    route_ms: float = 0.0
    total_ms: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "acquire": self.acquire_ms,
            "assemble": self.assemble_ms,
            "preprocess": self.preprocess_ms,
            "inference": self.inference_ms,
            "postprocess": self.postprocess_ms,
            "annotate": self.annotate_ms,
            "route": self.route_ms,
        }


@dataclass
class PipelineMetrics:
    """Rolling performance metrics for the pipeline loop."""

    iteration_fps: float = 0.0
    frames_per_second: float = 0.0
    iteration_ms: float = 0.0
    inference_ms: float = 0.0
    inference_budget_percent: float = 0.0
    stage_ms: dict[str, float] = field(default_factory=dict)
    iterations: int = 0
    frames: int = 0


@dataclass
class IterationReport:
    """What a single pipeline iteration produced."""

    routing_version: int
    batch_size: int
    events: list[DestinationEvent]
    timings: StageTimings
    batch_error: str | None = None
    deferred: tuple[int, ...] = ()
