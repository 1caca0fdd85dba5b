"""Event sinks: the only place events leave the pipeline."""

from __future__ import annotations

import queue
import threading
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np
from loguru import logger

from fod_monitor.pipeline.types import (
    ErrorEvent,
    ImagePayloadEvent,
    NoDataEvent,
    SourcesEvent,
)


if TYPE_CHECKING:
    from collections.abc import Sequence

    from fod_monitor.pipeline.types import DestinationEvent


class EventSink(Protocol):
    """Receiver of destination and source-list events."""

    def emit(self, event: DestinationEvent | SourcesEvent) -> None:
        """Deliver one event without blocking the pipeline."""
        ...

    def close(self) -> None:
        """Release sink resources."""
        ...


class QueueSink:
    """One bounded queue per destination plus one for source lists.

    When a queue is full the oldest event is dropped, so a slow consumer
    never stalls the producer.
    """

    def __init__(self, num_destinations: int, maxsize: int = 4) -> None:
        self.destinations: list[queue.Queue] = [
            queue.Queue(maxsize=maxsize) for _ in range(num_destinations)
        ]
        self.sources: queue.Queue = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._lock = threading.Lock()

    def emit(self, event: DestinationEvent | SourcesEvent) -> None:
        if isinstance(event, SourcesEvent):
            target = self.sources
        else:
            target = self.destinations[event.destination_id]
        with self._lock:
            while True:
                try:
                    target.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        target.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass

    def get(self, destination_id: int, timeout: float | None = None) -> DestinationEvent:
        return self.destinations[destination_id].get(timeout=timeout)

    def drain(self, destination_id: int) -> list[DestinationEvent]:
        """Return every queued event of one destination, oldest first."""
        events = []
        target = self.destinations[destination_id]
        while True:
            try:
                events.append(target.get_nowait())
            except queue.Empty:
                return events

    def latest_sources(self) -> SourcesEvent | None:
        latest = None
        while True:
            try:
                latest = self.sources.get_nowait()
            except queue.Empty:
                return latest

    def close(self) -> None:
        pass


def _status_image(text: str, size: tuple[int, int] = (480, 640)) -> np.ndarray:
    canvas = np.zeros((*size, 3), dtype=np.uint8)
    lines = text.split("\n")
    for row, line in enumerate(lines):
        cv2.putText(
            canvas,
            line.strip(),
            (20, 40 + row * 30),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            (255, 255, 255),
            1,
            cv2.LINE_AA,
        )
    return canvas


class OpenCVWindowSink:
    """Shows one OpenCV window per destination.

    ``emit`` may be called from the pipeline thread; the windows themselves are
    only touched from ``pump``, which must run on the thread that owns the GUI.
    """

    def __init__(self, names: Sequence[str]) -> None:
        self.names = tuple(names)
        self.quit_requested = False
        self._pending: dict[int, np.ndarray] = {}
        self._frame_sources: dict[int, int] = {}
        self._lock = threading.Lock()

    def emit(self, event: DestinationEvent | SourcesEvent) -> None:
        if isinstance(event, SourcesEvent):
            logger.info("Available cameras: {}", list(event.source_ids))
            return

        dest = event.destination_id
        if isinstance(event, ImagePayloadEvent):
            image = cv2.imdecode(np.frombuffer(event.image, dtype=np.uint8), cv2.IMREAD_COLOR)
            if image is None:
                image = _status_image("Error: Could not decode payload.")
        elif isinstance(event, ErrorEvent):
            image = _status_image(event.reason)
        elif isinstance(event, NoDataEvent):
            # Keep the last frame of the same camera on screen while waiting.
            with self._lock:
                if self._frame_sources.get(dest) == event.source_id:
                    return
            image = _status_image(f"Waiting for camera {event.source_id}...")
        else:
            return

        with self._lock:
            self._pending[dest] = image
            if isinstance(event, ImagePayloadEvent):
                self._frame_sources[dest] = event.source_id
            else:
                self._frame_sources.pop(dest, None)

    def pump(self, wait_ms: int = 1) -> bool:
        """Show pending images; returns False once ``q`` was pressed."""
        with self._lock:
            pending, self._pending = self._pending, {}
        for destination_id, image in pending.items():
            cv2.imshow(self._window_name(destination_id), image)
        if cv2.waitKey(wait_ms) & 0xFF == ord("q"):
            logger.info("Quit requested by user")
            self.quit_requested = True
        return not self.quit_requested

    def close(self) -> None:
        cv2.destroyAllWindows()

    def _window_name(self, destination_id: int) -> str:
        if destination_id < len(self.names):
            return self.names[destination_id]
        return f"destination {destination_id}"
