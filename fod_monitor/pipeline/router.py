"""Per-destination event routing for processed frames."""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
from loguru import logger

from fod_monitor.errors import FrameError
from fod_monitor.pipeline.types import (
    DestinationEvent,
    ErrorEvent,
    ImagePayloadEvent,
    NoDataEvent,
    SourcesEvent,
)


if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping

    import numpy as np

    from fod_monitor.errors import CameraError
    from fod_monitor.pipeline.routing import RoutingTable
    from fod_monitor.pipeline.sinks import EventSink
    from fod_monitor.pipeline.types import FrameResult
    from fod_monitor.pipeline.workers import WorkerPool


def encode_image(image: np.ndarray, encoding: str = "jpg", quality: int = 80) -> bytes:
    """Encode a BGR image to bytes; raises FrameError when OpenCV refuses it."""
    params: list[int] = []
    if encoding in ("jpg", "jpeg"):
        params = [cv2.IMWRITE_JPEG_QUALITY, int(quality)]
    elif encoding == "webp":
        params = [cv2.IMWRITE_WEBP_QUALITY, max(1, int(quality))]
    try:
        ok, buffer = cv2.imencode(f".{encoding}", image, params)
    except cv2.error as exc:
        raise FrameError(f"Could not encode frame as {encoding}: {exc}") from exc
    if not ok:
        raise FrameError(f"Could not encode frame as {encoding}")
    return buffer.tobytes()


class OutputRouter:
    """Turn one iteration's results into events for every mapped destination."""

    def __init__(
        self,
        sink: EventSink,
        *,
        encoding: str = "jpg",
        jpeg_quality: int = 80,
        pool: WorkerPool | None = None,
    ) -> None:
        self.sink = sink
        self.encoding = encoding
        self.jpeg_quality = jpeg_quality
        self.pool = pool

    def route(
        self,
        snapshot: RoutingTable,
        results: Mapping[int, FrameResult],
        source_errors: Mapping[int, CameraError] | None = None,
        batch_error: str | None = None,
        failed: Collection[int] = (),
    ) -> list[DestinationEvent]:
        source_errors = source_errors or {}
        mapped = snapshot.sources()
        encoded = self._encode_all(
            [results[source] for source in sorted(mapped) if source in results]
        )

        events: list[DestinationEvent] = []
        for destination_id, source_id in snapshot.items():
            if source_id is None:
                continue
            if source_id in source_errors:
                event: DestinationEvent = ErrorEvent(
                    destination_id, source_id, source_errors[source_id].reason
                )
            elif source_id in failed:
                event = ErrorEvent(
                    destination_id, source_id, batch_error or "Error: Inference failed."
                )
            elif source_id in results:
                payload = encoded[source_id]
                if isinstance(payload, FrameError):
                    event = ErrorEvent(destination_id, source_id, str(payload))
                else:
                    result = results[source_id]
                    event = ImagePayloadEvent(
                        destination_id=destination_id,
                        source_id=source_id,
                        sequence=result.frame.sequence,
                        image=payload,
                        encoding=self.encoding,
                        detections=result.detections,
                    )
            else:
                event = NoDataEvent(destination_id, source_id)
            events.append(event)

        for event in events:
            self.sink.emit(event)
        return events

    def emit_sources(self, source_ids: Iterable[int]) -> SourcesEvent:
        event = SourcesEvent(tuple(sorted(source_ids)))
        self.sink.emit(event)
        return event

    def _encode_all(self, results: list[FrameResult]) -> dict[int, bytes | FrameError]:
        """Encode each source's image once, shared by all its destinations."""
        images = [result.image for result in results]
        if self.pool is not None:
            outcomes = [
                item.value if item.ok else item.error
                for item in self.pool.map(self._encode, images)
            ]
        else:
            outcomes = []
            for image in images:
                try:
                    outcomes.append(self._encode(image))
                except Exception as exc:
                    outcomes.append(exc)

        encoded: dict[int, bytes | FrameError] = {}
        for result, outcome in zip(results, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "Encoding frame {} of camera {} failed: {}",
                    result.frame.sequence,
                    result.frame.source_id,
                    outcome,
                )
                if not isinstance(outcome, FrameError):
                    outcome = FrameError(f"Could not encode frame: {outcome}")
            encoded[result.frame.source_id] = outcome
        return encoded

    def _encode(self, image: np.ndarray) -> bytes:
        return encode_image(image, self.encoding, self.jpeg_quality)
